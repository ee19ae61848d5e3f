"""Tests for session merge, term tracking and the session registry."""

import pytest

from conftest import TOKYO_BBOX, TOKYO_SPEC, feature
from hexharvest.errors import ConfigurationError, SessionDisposedRace
from hexharvest.providers.base import ProviderResult
from hexharvest.session import SessionRegistry, SessionState, build_target
from hexharvest.settings import Settings


@pytest.fixture
def state(pair_target):
    return SessionState("s1", pair_target, generation=1)


class TestApplyResult:
    def test_duplicate_id_counted_once(self, state):
        """The same item id from two pages is counted once."""
        state.register_term(1, "food", "a")
        state.apply_result(1, "food", ProviderResult("a", items=[feature("x"), feature("y")], remaining=5,
                                                     final=False))
        stats = state.apply_result(1, "food", ProviderResult("a", items=[feature("x")], remaining=0))
        cp = state.category(1, "food")
        assert stats.duplicates == 1
        assert cp.crawled == 2
        assert len(cp.items) == 2

    def test_merge_is_idempotent(self, state):
        result = ProviderResult("a", items=[feature("x")], remaining=3, final=False)
        state.apply_result(1, "food", result)
        before = state.progress_snapshot(1)
        state.apply_result(1, "food", result)
        assert state.progress_snapshot(1) == before

    def test_dedup_scope_is_hex_and_category(self, state):
        state.apply_result(1, "food", ProviderResult("a", items=[feature("x")]))
        state.apply_result(1, "park", ProviderResult("a", items=[feature("x")]))
        state.apply_result(2, "food", ProviderResult("a", items=[feature("x", hex_id=2)]))
        assert state.category(1, "food").crawled == 1
        assert state.category(1, "park").crawled == 1
        assert state.category(2, "food").crawled == 1

    def test_totals(self, state):
        state.apply_result(1, "food", ProviderResult("a", items=[feature("x")], remaining=9000, final=False))
        summary = state.progress_snapshot(1)[1]
        food = summary["categories"]["food"]
        assert food == {"crawled": 1, "remaining": 9000, "total": 9001, "final": False}
        assert summary["percent"] == pytest.approx(1 / 9001)

    def test_percent_is_one_without_items(self, state):
        assert state.progress_snapshot(2)[2]["percent"] == 1.0

    def test_parent_closure(self, state):
        """A reporting child closes its open parent with remaining 0."""
        state.register_term(1, "food", "a")
        state.apply_result(1, "food", ProviderResult("a", remaining=9000, final=False))
        state.register_term(1, "food", "aa")
        state.register_term(1, "food", "ab")
        state.apply_result(1, "food", ProviderResult("aa", remaining=0, final=True))
        cp = state.category(1, "food")
        assert cp.terms["a"].final and cp.terms["a"].remaining == 0
        assert not cp.final
        state.apply_result(1, "food", ProviderResult("ab", remaining=0, final=True))
        assert cp.final

    def test_open_term_blocks_final(self, state):
        state.register_term(1, "food", "a")
        state.register_term(1, "food", "b")
        state.apply_result(1, "food", ProviderResult("a"))
        assert not state.category(1, "food").final

    def test_category_without_terms_is_not_final(self, state):
        assert not state.category(1, "food").final

    def test_failure_is_final_and_recorded(self, state):
        state.register_term(1, "food", "a")
        state.apply_result(1, "food", ProviderResult.failure("a", "boom", "E1"))
        cp = state.category(1, "food")
        assert cp.final
        assert cp.errors[0].message == "boom"

    def test_complete(self, state):
        for hex_id in state.progress:
            for name in state.progress[hex_id]:
                state.apply_result(hex_id, name, ProviderResult("a"))
        assert state.is_complete()
        state.in_flight = 1
        assert not state.is_complete()


class TestVisualizerInputs:
    def test_triangle_stats(self, state):
        state.apply_result(1, "food", ProviderResult("a", items=[feature("x"), feature("y")]))
        stats = state.triangle_stats()
        assert stats[1]["1-1"] == {"food": 2}
        assert stats[2]["2-1"] == {}

    def test_crawl_result(self, state):
        state.apply_result(1, "food", ProviderResult("a", items=[feature("x")]))
        food = state.crawl_result()[1]["food"]
        assert food["items"]["type"] == "FeatureCollection"
        assert food["crawled"] == 1 and food["total"] == 1 and food["final"]


class TestSessionRegistry:
    def test_create_dispose(self):
        registry = SessionRegistry()
        sid = registry.create()
        assert sid in registry
        assert registry.get(sid) is None
        assert registry.dispose(sid)
        assert not registry.dispose(sid)
        assert len(registry) == 0

    def test_duplicate_session(self):
        registry = SessionRegistry()
        registry.create("s1")
        with pytest.raises(ConfigurationError):
            registry.create("s1")

    def test_set_target_bumps_generation(self, pair_target):
        registry = SessionRegistry()
        sid = registry.create()
        first = registry.set_target(sid, pair_target)
        second = registry.set_target(sid, pair_target)
        assert second.generation > first.generation
        assert registry.require(sid, second.generation) is second
        with pytest.raises(SessionDisposedRace):
            registry.require(sid, first.generation)

    def test_require_disposed(self, pair_target):
        registry = SessionRegistry()
        sid = registry.create()
        state = registry.set_target(sid, pair_target)
        registry.dispose(sid)
        with pytest.raises(SessionDisposedRace):
            registry.require(sid, state.generation)

    def test_set_target_unknown_session(self, pair_target):
        with pytest.raises(SessionDisposedRace):
            SessionRegistry().set_target("nope", pair_target)


class TestBuildTarget:
    def test_tokyo(self):
        """Tokyo bbox, auto size, two categories with two colors."""
        target = build_target(TOKYO_BBOX, cell_size=0, category_spec=TOKYO_SPEC, settings=Settings())
        assert len(target.mesh.hexes) >= 1
        assert list(target.categories) == ["food", "park"]
        colors = {p["color"] for p in target.palette.values()}
        assert len(colors) == 2
        assert target.task_count == len(target.mesh.hexes) * 2

    def test_bad_spec_before_mesh(self):
        with pytest.raises(ConfigurationError):
            build_target(TOKYO_BBOX, cell_size=0, category_spec="")
