"""Quality selection over format candidates.

AUDIO
=====
Candidates are sorted ascending by bitrate.
- Requested bitrate <= 100 kbps: the nearest bitrate in either direction wins
  (small targets come from storage-conscious callers).
- Requested bitrate > 100 kbps: the smallest bitrate >= the request wins,
  otherwise the highest available (never downgrade below the request unless
  nothing better exists).

VIDEO
=====
A single candidate is returned as-is; otherwise the nearest resolution wins.

Ties always go to the earlier candidate.
"""

import re
from typing import List, Optional

from mediarelay.models.media import FormatCandidate, MediaKind


LOW_BITRATE_THRESHOLD_KBPS = 100


def parse_quality(value) -> int:
    """Reduce "320kbps", "720p", 128 etc. to an int; anything unparseable is 0."""
    if value is None:
        return 0
    digits = re.sub(r"[^0-9]", "", str(value))
    return int(digits) if digits else 0


def _nearest(candidates: List[FormatCandidate], target: int, attr: str) -> FormatCandidate:
    best = candidates[0]
    best_diff = abs((getattr(best, attr) or 0) - target)
    for candidate in candidates[1:]:
        diff = abs((getattr(candidate, attr) or 0) - target)
        if diff < best_diff:
            best, best_diff = candidate, diff
    return best


def select_format(
    candidates: List[FormatCandidate],
    kind,
    quality,
) -> Optional[FormatCandidate]:
    """
    Pick the best candidate for the requested kind and quality.

    Args:
        candidates: Candidates from a Format Resolver
        kind: MediaKind or any vocabulary accepted by MediaKind.parse
        quality: Requested quality ("128kbps", "720p", 128, ...)

    Returns:
        The chosen candidate, or None if no candidate has the requested kind
    """
    kind = MediaKind.parse(kind)
    target = parse_quality(quality)

    if kind == MediaKind.AUDIO:
        audio = sorted(
            (c for c in candidates if c.media_type == MediaKind.AUDIO),
            key=lambda c: c.bitrate_kbps or 0,
        )
        if not audio:
            return None

        if target <= LOW_BITRATE_THRESHOLD_KBPS:
            return _nearest(audio, target, "bitrate_kbps")

        for candidate in audio:
            if (candidate.bitrate_kbps or 0) >= target:
                return candidate
        return audio[-1]

    video = [c for c in candidates if c.media_type == MediaKind.VIDEO]
    if not video:
        return None
    if len(video) == 1:
        return video[0]
    return _nearest(video, target, "resolution_p")
