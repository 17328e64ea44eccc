from dataclasses import dataclass
from typing import Optional, Sequence
from app.services.variants import (
    MediaType,
    QualityKind,
    QualityRequest,
    VariantDescriptor,
    VariantSet,
)


@dataclass(frozen=True)
class FormatSelection:
    """
    Either a single variant usable directly, or a video-only/audio-only
    pair that has to be muxed. "Nothing viable" is represented by None
    at the call site, never by an empty FormatSelection.
    """
    chosen: Optional[VariantDescriptor] = None
    video: Optional[VariantDescriptor] = None
    audio: Optional[VariantDescriptor] = None

    def __post_init__(self):
        single = self.chosen is not None
        pair = self.video is not None and self.audio is not None
        if single == pair or (not pair and (self.video or self.audio)):
            raise ValueError("FormatSelection must be a single variant or a video/audio pair")

    @classmethod
    def single(cls, variant: VariantDescriptor) -> "FormatSelection":
        return cls(chosen=variant)

    @classmethod
    def pair(cls, video: VariantDescriptor, audio: VariantDescriptor) -> "FormatSelection":
        return cls(video=video, audio=audio)

    @property
    def needs_mux(self) -> bool:
        return self.chosen is None


class FormatSelector:
    """Choose variants for a (media type, quality) request"""

    @staticmethod
    def choose(
        candidates: Sequence[VariantDescriptor],
        quality: QualityRequest
    ) -> Optional[VariantDescriptor]:
        """Apply the quality rule; ties go to the earliest candidate."""
        if not candidates:
            return None

        if quality.kind == QualityKind.EXACT:
            for variant in candidates:
                if variant.itag == quality.itag:
                    return variant
            quality = QualityRequest.highest()

        # max()/min() keep the first of equal elements
        if quality.kind == QualityKind.LOWEST:
            return min(candidates, key=lambda v: v.quality_rank)
        return max(candidates, key=lambda v: v.quality_rank)

    @staticmethod
    def select(
        variants: VariantSet,
        media_type: MediaType,
        quality: QualityRequest,
        allow_external_mux: bool
    ) -> Optional[FormatSelection]:
        if media_type == MediaType.AUDIO:
            candidates = variants.audio_only() or variants.with_audio()
            chosen = FormatSelector.choose(candidates, quality)
            return FormatSelection.single(chosen) if chosen else None

        # Pre-muxed variants avoid spawning a process
        muxed = FormatSelector.choose(variants.muxed(), quality)
        if muxed:
            return FormatSelection.single(muxed)

        if not allow_external_mux:
            return None

        video = FormatSelector.choose(variants.video_only(), quality)
        # Audio quality does not follow a lowered video quality
        audio = FormatSelector.choose(variants.audio_only(), QualityRequest.highest())
        if video is None or audio is None:
            return None
        return FormatSelection.pair(video, audio)
