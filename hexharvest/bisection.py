"""
Time-window bisection for paginated, newest-first search APIs.

After every page the active window ``[min, max]`` of a term lineage either
splits into two children (``T+"a"`` newer half, ``T+"b"`` older half),
continues below the oldest item seen, or finishes.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Set

from .providers.base import ContinuationState, TimeWindow

logger = logging.getLogger(__name__)


class Decision(enum.Enum):
    SPLIT = "split"
    CONTINUE = "continue"
    FINAL = "final"


@dataclass
class PageSummary:
    count: int
    total: int
    pages: int
    per_page: int
    # in provider order, newest first
    timestamps: Sequence[int] = field(default_factory=list)
    authors: Set[str] = field(default_factory=set)

    @property
    def newest(self) -> Optional[int]:
        return self.timestamps[0] if self.timestamps else None

    @property
    def oldest(self) -> Optional[int]:
        return self.timestamps[-1] if self.timestamps else None

    @property
    def remaining(self) -> int:
        return max(0, self.total - self.count)


@dataclass
class Outcome:
    decision: Decision
    next_states: List[ContinuationState] = field(default_factory=list)
    remaining: int = 0
    skipped_s: int = 0

    @property
    def final(self) -> bool:
        return self.decision is Decision.FINAL


@dataclass
class TimeWindowBisection:
    split_pages: int = 4
    haste: bool = True
    burst_span_s: int = 3600
    burst_skip_scale: float = 3600.0
    burst_skip_min: int = 360
    burst_skip_max: int = 12 * 3600

    def burst_skip(self, page: PageSummary) -> int:
        """Seconds to jump over a single-author burst, 0 when the page is not one."""
        span = page.newest - page.oldest
        if len(page.authors) != 1 or page.count < page.per_page or span >= self.burst_span_s:
            return 0
        if span < 0:
            return int(round(abs(span) * 1.1))
        density = page.count / max(span, 1)
        return int(min(self.burst_skip_max, max(self.burst_skip_min, density * self.burst_skip_scale)))

    def decide(self, state: ContinuationState, page: PageSummary) -> Outcome:
        if page.count == 0:
            logger.debug("Zero (%s)", state.term_id)
            return Outcome(Decision.FINAL)
        if page.count >= page.total:
            logger.debug("Final (%s): %d/%d", state.term_id, page.count, page.total)
            return Outcome(Decision.FINAL)
        if state.window is None:
            raise ValueError(f"term {state.term_id} has no time window to bisect")

        oldest, newest = page.oldest, page.newest
        next_max = oldest if oldest < newest else oldest - 1
        skip = self.burst_skip(page)
        if skip:
            logger.warning("High posting activity by %s within %ds (%s); skipping %ds",
                           ",".join(sorted(page.authors)), newest - oldest, state.term_id, skip)
            next_max -= skip

        window_min = state.window.min
        if next_max < window_min:
            logger.debug("Final (%s): window exhausted at %d", state.term_id, next_max)
            return Outcome(Decision.FINAL, skipped_s=skip)

        width = next_max - window_min
        if self.haste and page.pages > self.split_pages and width >= 1:
            mid = window_min + (width + 1) // 2
            newer = state.child("a", window=TimeWindow(mid, next_max))
            older = state.child("b", window=TimeWindow(window_min, mid - 1))
            logger.debug("Split (%s): %d..%d | %d..%d", state.term_id, window_min, mid - 1, mid, next_max)
            return Outcome(Decision.SPLIT, [newer, older], page.remaining, skip)

        logger.debug("Continue[%d pages] (%s): %d..%d", page.pages, state.term_id, window_min, next_max)
        return Outcome(Decision.CONTINUE, [state.advance(window=TimeWindow(window_min, next_max))],
                       page.remaining, skip)
