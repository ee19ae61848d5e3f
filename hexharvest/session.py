"""
Session-scoped crawl state: per hex x category term tracking, id dedup and
progress snapshots, plus the registry that owns every session.

``SessionState`` is mutated only by the scheduler's core thread. The
registry is the single structure shared across threads.
"""

import logging
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .categories import Category, assign_palette, parse_category_spec
from .errors import ConfigurationError, SessionDisposedRace
from .geomesh import GeoMesh, build_mesh
from .providers.base import ErrorDescriptor, ProviderResult
from .settings import Settings, load_settings

logger = logging.getLogger(__name__)


@dataclass
class Target:
    mesh: GeoMesh
    categories: Dict[str, Category]
    palette: Dict[str, Dict[str, str]]

    @property
    def task_count(self) -> int:
        return len(self.mesh.hexes) * len(self.categories)


def build_target(boundary: Any, cell_size: Optional[float] = None, unit: Optional[str] = None,
                 category_spec: str = "", settings: Optional[Settings] = None) -> Target:
    """Parse the category spec, build the mesh and assign the palette."""
    settings = settings or load_settings()
    categories = parse_category_spec(category_spec)
    mesh = build_mesh(boundary,
                      settings.default_cell_size if cell_size is None else cell_size,
                      unit or settings.default_unit,
                      settings)
    palette = assign_palette(categories)
    return Target(mesh=mesh, categories=categories, palette=palette)


@dataclass
class TermProgress:
    remaining: int = 0
    final: bool = False


@dataclass
class MergeStats:
    added: int = 0
    duplicates: int = 0
    outside: int = 0


@dataclass
class CategoryProgress:
    terms: Dict[str, TermProgress] = field(default_factory=dict)
    ids: Set[str] = field(default_factory=set)
    items: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[ErrorDescriptor] = field(default_factory=list)

    @property
    def crawled(self) -> int:
        return len(self.ids)

    @property
    def remaining(self) -> int:
        return sum(t.remaining for t in self.terms.values())

    @property
    def total(self) -> int:
        return self.crawled + self.remaining

    @property
    def final(self) -> bool:
        return bool(self.terms) and all(t.final for t in self.terms.values()) and self.remaining == 0

    def snapshot(self) -> Dict[str, Any]:
        return {"crawled": self.crawled, "remaining": self.remaining, "total": self.total, "final": self.final}


def _percent(crawled: int, total: int) -> float:
    return crawled / total if total else 1.0


class SessionState:
    def __init__(self, session_id: str, target: Target, generation: int):
        self.session_id = session_id
        self.target = target
        self.generation = generation
        self.progress: Dict[int, Dict[str, CategoryProgress]] = {
            hex_id: {name: CategoryProgress() for name in target.categories}
            for hex_id in target.mesh.hexes
        }
        self.in_flight = 0
        self.finished = False
        self.provider_id: Optional[str] = None
        self.options: Any = None
        self.done = threading.Event()

    def category(self, hex_id: int, category: str) -> CategoryProgress:
        return self.progress[hex_id][category]

    def register_term(self, hex_id: int, category: str, term_id: str) -> TermProgress:
        """Record a dispatched term as open."""
        return self.category(hex_id, category).terms.setdefault(term_id, TermProgress())

    def apply_result(self, hex_id: int, category: str, result: ProviderResult) -> MergeStats:
        """Merge one provider page. Applying the same result twice changes nothing."""
        cp = self.category(hex_id, category)
        stats = MergeStats(outside=result.outside_count)
        for feature in result.items:
            item_id = str(feature["properties"]["id"])
            if item_id in cp.ids:
                stats.duplicates += 1
                continue
            cp.ids.add(item_id)
            cp.items.append(feature)
            stats.added += 1

        term = cp.terms.setdefault(result.term_id, TermProgress())
        term.remaining = result.remaining
        term.final = result.final

        parent_id = result.term_id[:-1]
        parent = cp.terms.get(parent_id) if parent_id else None
        if parent is not None and not parent.final:
            parent.final = True
            parent.remaining = 0
            logger.debug("Closed term %s after %s reported (hex=%s category=%s)",
                         parent_id, result.term_id, hex_id, category)

        if result.error is not None and result.error not in cp.errors:
            cp.errors.append(result.error)
        return stats

    def is_complete(self) -> bool:
        if self.in_flight:
            return False
        return all(cp.final for cats in self.progress.values() for cp in cats.values())

    def hex_summary(self, hex_id: int) -> Dict[str, Any]:
        categories = {name: cp.snapshot() for name, cp in self.progress[hex_id].items()}
        crawled = sum(c["crawled"] for c in categories.values())
        remaining = sum(c["remaining"] for c in categories.values())
        total = crawled + remaining
        return {
            "crawled": crawled,
            "remaining": remaining,
            "total": total,
            "percent": _percent(crawled, total),
            "categories": categories,
        }

    def progress_snapshot(self, hex_id: Optional[int] = None) -> Dict[int, Dict[str, Any]]:
        hex_ids = [hex_id] if hex_id is not None else list(self.progress)
        return {h: self.hex_summary(h) for h in hex_ids}

    def triangle_stats(self) -> Dict[int, Dict[str, Dict[str, int]]]:
        """hex -> triangle -> category -> item count."""
        stats: Dict[int, Dict[str, Dict[str, int]]] = {}
        for hex_id, cats in self.progress.items():
            per_triangle = {t: defaultdict(int) for t in self.target.mesh.hexes[hex_id].triangle_ids}
            for name, cp in cats.items():
                for feature in cp.items:
                    tri = feature["properties"].get("harvest_triangleId")
                    if tri in per_triangle:
                        per_triangle[tri][name] += 1
            stats[hex_id] = {t: dict(counts) for t, counts in per_triangle.items()}
        return stats

    def crawl_result(self) -> Dict[int, Dict[str, Dict[str, Any]]]:
        return {
            hex_id: {
                name: {
                    "items": {"type": "FeatureCollection", "features": list(cp.items)},
                    "crawled": cp.crawled,
                    "total": cp.total,
                    "final": cp.final,
                }
                for name, cp in cats.items()
            }
            for hex_id, cats in self.progress.items()
        }


class SessionRegistry:
    """Every live session, guarded by one lock.

    Each ``set_target`` starts a new generation; completions carrying an older
    generation are rejected by :meth:`require`.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, Optional[SessionState]] = {}
        self._generation = 0

    def create(self, session_id: Optional[str] = None) -> str:
        session_id = session_id or uuid.uuid4().hex
        with self._lock:
            if session_id in self._sessions:
                raise ConfigurationError(f"session {session_id} already exists")
            self._sessions[session_id] = None
        logger.info("Session %s created", session_id)
        return session_id

    def dispose(self, session_id: str) -> bool:
        with self._lock:
            existed = session_id in self._sessions
            state = self._sessions.pop(session_id, None)
        if not existed:
            return False
        if state is not None and state.in_flight:
            logger.warning("Session %s disposed with %d tasks in flight", session_id, state.in_flight)
        logger.info("Session %s disposed", session_id)
        return True

    def set_target(self, session_id: str, target: Target) -> SessionState:
        with self._lock:
            if session_id not in self._sessions:
                raise SessionDisposedRace(session_id, 0)
            previous = self._sessions[session_id]
            self._generation += 1
            state = SessionState(session_id, target, self._generation)
            self._sessions[session_id] = state
        if previous is not None and previous.in_flight:
            logger.warning("Session %s target replaced with %d tasks in flight; their results will be dropped",
                           session_id, previous.in_flight)
        logger.info("Session %s target set: %d hexes x %d categories (generation %d)",
                    session_id, len(target.mesh.hexes), len(target.categories), state.generation)
        return state

    def get(self, session_id: str) -> Optional[SessionState]:
        with self._lock:
            return self._sessions.get(session_id)

    def require(self, session_id: str, generation: Optional[int] = None) -> SessionState:
        """Current state of ``session_id``; raises ``SessionDisposedRace`` when it is gone or superseded."""
        with self._lock:
            state = self._sessions.get(session_id)
        if state is None or (generation is not None and state.generation != generation):
            raise SessionDisposedRace(session_id, generation or 0)
        return state

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
