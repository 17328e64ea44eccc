from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple


class MediaType(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"

    @classmethod
    def parse(cls, value: Optional[str]) -> "MediaType":
        """Anything other than 'audio' is a video request"""
        if value and value.strip().lower() == "audio":
            return cls.AUDIO
        return cls.VIDEO


class QualityKind(str, Enum):
    HIGHEST = "highest"
    LOWEST = "lowest"
    EXACT = "exact"


@dataclass(frozen=True)
class QualityRequest:
    """Highest, Lowest, or an exact itag"""
    kind: QualityKind = QualityKind.HIGHEST
    itag: Optional[int] = None

    @classmethod
    def highest(cls) -> "QualityRequest":
        return cls(QualityKind.HIGHEST)

    @classmethod
    def lowest(cls) -> "QualityRequest":
        return cls(QualityKind.LOWEST)

    @classmethod
    def exact(cls, itag: int) -> "QualityRequest":
        return cls(QualityKind.EXACT, itag)

    @classmethod
    def parse(cls, value: Optional[str]) -> "QualityRequest":
        """Parse a quality string; never fails, falls back to highest."""
        if value is None:
            return cls.highest()
        value = value.strip().lower()
        if value == "lowest":
            return cls.lowest()
        if value == "highest":
            return cls.highest()
        try:
            return cls.exact(int(value))
        except ValueError:
            return cls.highest()


@dataclass(frozen=True)
class VariantDescriptor:
    """One encoded representation of a remote media item"""
    format_id: str
    url: str
    has_video: bool
    has_audio: bool
    container: str
    mime_type: str
    content_length: Optional[int] = None
    quality_rank: Tuple[float, ...] = ()
    itag: Optional[int] = None
    http_headers: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)

    @property
    def is_muxed(self) -> bool:
        return self.has_video and self.has_audio

    @property
    def is_audio_only(self) -> bool:
        return self.has_audio and not self.has_video

    @property
    def is_video_only(self) -> bool:
        return self.has_video and not self.has_audio


@dataclass(frozen=True)
class VariantSet:
    """Variants listed by the extractor for one item, in supplied order"""
    title: str
    variants: Tuple[VariantDescriptor, ...] = ()

    @classmethod
    def of(cls, title: str, variants: Iterable[VariantDescriptor]) -> "VariantSet":
        return cls(title=title, variants=tuple(variants))

    def __iter__(self):
        return iter(self.variants)

    def __len__(self) -> int:
        return len(self.variants)

    def audio_only(self) -> Tuple[VariantDescriptor, ...]:
        return tuple(v for v in self.variants if v.is_audio_only)

    def video_only(self) -> Tuple[VariantDescriptor, ...]:
        return tuple(v for v in self.variants if v.is_video_only)

    def muxed(self) -> Tuple[VariantDescriptor, ...]:
        return tuple(v for v in self.variants if v.is_muxed)

    def with_audio(self) -> Tuple[VariantDescriptor, ...]:
        return tuple(v for v in self.variants if v.has_audio)
