from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Iterable

import numpy as np

from search.models import AlignmentResult


@dataclass(frozen=True)
class AlignmentConfig:
    min_vote_count: int = 5
    min_vote_ratio: float = 0.05


class AlignmentService:
    """Votes on (track, frame offset) pairs between query and stored fingerprints."""

    def __init__(self, config: AlignmentConfig | None = None):
        self.config = config or AlignmentConfig()

    def align(
        self,
        query_hashes: np.ndarray,
        query_times: np.ndarray,
        db_rows: Iterable[tuple[int, int, int]],
    ) -> AlignmentResult:
        total = len(query_hashes)
        if total == 0:
            return AlignmentResult(found=False, total=0, reason="Query had no fingerprints")
        if len(query_times) != total:
            return AlignmentResult(found=False, total=total, reason="Hash/time length mismatch")

        query_index: dict[int, list[int]] = defaultdict(list)
        for h, t in zip(query_hashes.tolist(), query_times.tolist()):
            query_index[int(h)].append(int(t))

        votes: Counter[tuple[int, int]] = Counter()
        for track_id, finger, db_dt in db_rows:
            for q_time in query_index.get(finger, ()):
                votes[(track_id, db_dt - q_time)] += 1

        if not votes:
            return AlignmentResult(found=False, total=total, reason="No alignment candidates")

        (best_track_id, best_offset), best_votes = votes.most_common(1)[0]
        vote_ratio = best_votes / float(total)

        if best_votes < self.config.min_vote_count:
            return AlignmentResult(
                found=False,
                matches=best_votes,
                total=total,
                reason=(
                    f"Best candidate vote count {best_votes} is below min_vote_count "
                    f"{self.config.min_vote_count}"
                ),
            )

        if vote_ratio < self.config.min_vote_ratio:
            return AlignmentResult(
                found=False,
                matches=best_votes,
                total=total,
                reason=(
                    f"Best candidate vote ratio {vote_ratio:.3f} is below min_vote_ratio "
                    f"{self.config.min_vote_ratio:.3f}"
                ),
            )

        return AlignmentResult(
            found=True,
            track_id=best_track_id,
            offset_frames=best_offset,
            matches=best_votes,
            total=total,
            score=vote_ratio,
            reason=f"Accepted with {best_votes} votes ({vote_ratio:.3f} ratio)",
        )
