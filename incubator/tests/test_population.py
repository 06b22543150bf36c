"""Tests for the beneficiary/candidate population filter and its snapshot cache."""
from __future__ import annotations

import pytest

from incubator.population import (
    SIN_NIVEL,
    PopulationCache,
    Row,
    build_score_index,
    effective_nivel,
    filter_population,
)

# id -> owner user id; users 1..6, users 1, 2, 3 and 6 hold the beneficiario role
ROWS = tuple(Row(id=i, user_id=i) for i in (10, 20, 30, 40, 50, 60))
BENEFICIARY_USERS = frozenset({10, 20, 30, 60})
# 10: Growth quota, 20: Scale quota, 40: Growth quota but owner lacks the role
APPROVED = {10: "Growth", 20: "Scale", 40: "Growth"}
# 30: candidate derived Growth, 50: candidate derived Scale, 60: no evaluations
SCORES = build_score_index([(10, 20.0), (20, 10.0), (30, 70.0), (30, 45.0), (50, 90.0), (60, None)])


def _filter(ft, nf):
    return filter_population(ROWS, BENEFICIARY_USERS, frozenset(APPROVED), APPROVED, SCORES, ft, nf)


def _ids(rows):
    return [r.id for r in rows]


class TestScoreIndex:
    def test_keeps_max_and_skips_none(self):
        assert SCORES == {10: 20.0, 20: 10.0, 30: 70.0, 50: 90.0}


class TestEffectiveNivel:
    def test_quota_tier_wins_over_score(self):
        assert effective_nivel(10, frozenset(APPROVED), APPROVED, SCORES) == "Growth"
        assert effective_nivel(20, frozenset(APPROVED), APPROVED, SCORES) == "Scale"

    def test_candidate_tier_is_derived(self):
        assert effective_nivel(30, frozenset(APPROVED), APPROVED, SCORES) == "Growth"
        assert effective_nivel(50, frozenset(APPROVED), APPROVED, SCORES) == "Scale"

    def test_unevaluated_candidate(self):
        assert effective_nivel(60, frozenset(APPROVED), APPROVED, SCORES) == SIN_NIVEL


class TestFilterPopulation:
    def test_todos_todos_keeps_everything_in_order(self):
        assert _ids(_filter("todos", "todos")) == [10, 20, 30, 40, 50, 60]

    def test_beneficiarios_require_role_and_quota(self):
        assert _ids(_filter("beneficiarios", "todos")) == [10, 20]

    def test_candidatos_are_rows_without_quota(self):
        assert _ids(_filter("candidatos", "todos")) == [30, 50, 60]

    def test_beneficiarios_growth_excludes_derived_growth(self):
        assert _ids(_filter("beneficiarios", "Growth")) == [10]

    def test_todos_growth_mixes_quota_and_derived(self):
        assert _ids(_filter("todos", "Growth")) == [10, 30, 40]

    def test_candidatos_scale_uses_derived_tier_only(self):
        assert _ids(_filter("candidatos", "Scale")) == [50]

    def test_nivel_candidatos_needs_some_evaluation(self):
        assert _ids(_filter("todos", "candidatos")) == [30, 50]

    def test_beneficiarios_with_nivel_candidatos_is_empty(self):
        assert _filter("beneficiarios", "candidatos") == ()

    def test_starter_from_low_scores(self):
        rows = (Row(id=1, user_id=1), Row(id=2, user_id=2))
        out = filter_population(rows, frozenset(), frozenset(), {}, {1: 50, 2: 51}, "todos", "Starter")
        assert _ids(out) == [1]

    @pytest.mark.parametrize("ft,nf", [
        ("todos", "todos"), ("beneficiarios", "Growth"), ("candidatos", "candidatos"), ("todos", "Scale"),
    ])
    def test_idempotent_and_order_preserving(self, ft, nf):
        once = _filter(ft, nf)
        twice = filter_population(once, BENEFICIARY_USERS, frozenset(APPROVED), APPROVED, SCORES, ft, nf)
        assert once == twice
        positions = [ROWS.index(r) for r in once]
        assert positions == sorted(positions)

    def test_returns_tuple(self):
        assert isinstance(_filter("todos", "todos"), tuple)

    @pytest.mark.parametrize("ft,nf", [("all", "todos"), ("todos", "Platinum")])
    def test_rejects_unknown_facets(self, ft, nf):
        with pytest.raises(ValueError):
            _filter(ft, nf)


class TestPopulationCache:
    def test_filter_before_publish_raises(self):
        with pytest.raises(RuntimeError):
            PopulationCache().filter()

    def test_memoises_per_revision(self):
        cache = PopulationCache()
        snap = cache.publish(ROWS, BENEFICIARY_USERS, APPROVED, SCORES)
        first = cache.filter("beneficiarios", "todos")
        assert cache.filter("beneficiarios", "todos") is first
        assert snap.filter("beneficiarios", "todos") == first

    def test_publish_bumps_revision_and_invalidates(self):
        cache = PopulationCache()
        first_snap = cache.publish(ROWS, BENEFICIARY_USERS, APPROVED, SCORES)
        before = cache.filter("beneficiarios", "todos")
        second_snap = cache.publish(ROWS, BENEFICIARY_USERS, {**APPROVED, 30: "Starter"}, SCORES)
        after = cache.filter("beneficiarios", "todos")
        assert second_snap.revision == first_snap.revision + 1
        assert _ids(before) == [10, 20]
        assert _ids(after) == [10, 20, 30]

    def test_snapshot_is_a_copy(self):
        approved = dict(APPROVED)
        cache = PopulationCache()
        snap = cache.publish(ROWS, BENEFICIARY_USERS, approved, SCORES)
        approved[30] = "Scale"
        assert 30 not in snap.approved_ids
        assert snap.nivel_of(30) == "Growth"

    def test_clear_drops_snapshot(self):
        cache = PopulationCache()
        cache.publish(ROWS, BENEFICIARY_USERS, APPROVED, SCORES)
        cache.clear()
        assert cache.snapshot is None
        with pytest.raises(RuntimeError):
            cache.filter()
