from dataclasses import dataclass


@dataclass
class AlignmentResult:
    found: bool
    track_id: int | None = None
    offset_frames: int | None = None
    matches: int = 0
    total: int = 0
    score: float | None = None
    reason: str | None = None
