import re
from dataclasses import dataclass
from typing import Optional

# First clause only; anything after a comma is ignored
RANGE_RE = re.compile(r"^\s*bytes\s*=\s*(\d+)\s*-\s*(\d*)\s*(?:,.*)?$", re.IGNORECASE)


@dataclass(frozen=True)
class RangeWindow:
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, total: int) -> str:
        return f"bytes {self.start}-{self.end}/{total}"


def negotiate(range_header: Optional[str], total_length: Optional[int]) -> Optional[RangeWindow]:
    """
    Compute the serving window for a Range header.
    Returns None (serve the full body) instead of failing on bad input.
    """
    if not range_header or not total_length:
        return None

    match = RANGE_RE.match(range_header)
    if not match:
        return None

    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else total_length - 1
    end = min(end, total_length - 1)

    if start > end:
        return None
    return RangeWindow(start, end)
