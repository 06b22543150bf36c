"""Beneficiary/candidate population filter shared by dashboard widgets and exports."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Mapping, Sequence

from incubator.scoring import Nivel, nivel_from_score

log = logging.getLogger(__name__)

FilterType = Literal["todos", "beneficiarios", "candidatos"]
NivelFilter = Literal["todos", "Starter", "Growth", "Scale", "candidatos"]

FILTER_TYPES: tuple[str, ...] = ("todos", "beneficiarios", "candidatos")
NIVEL_FILTERS: tuple[str, ...] = ("todos", "Starter", "Growth", "Scale", "candidatos")

SIN_NIVEL = "Sin nivel"


@dataclass(frozen=True)
class Row:
    """Minimal entrepreneurship view the filter needs; ``data`` carries the rest."""
    id: int
    user_id: int
    data: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)


def build_score_index(evaluations: Iterable[tuple[int, float | None]]) -> dict[int, float]:
    """Max score per entrepreneurship from ``(emprendimiento_id, puntaje)`` pairs."""
    index: dict[int, float] = {}
    for emp_id, puntaje in evaluations:
        if puntaje is None:
            continue
        if emp_id not in index or puntaje > index[emp_id]:
            index[emp_id] = puntaje
    return index


def derived_nivel(emp_id: int, score_index: Mapping[int, float]) -> Nivel | None:
    score = score_index.get(emp_id)
    if score is None:
        return None
    return nivel_from_score(score)  # type: ignore[return-value]


def effective_nivel(
    emp_id: int,
    approved_ids: frozenset[int] | set[int],
    approved_niveles: Mapping[int, str],
    score_index: Mapping[int, float],
) -> str:
    """Quota tier for beneficiaries, score-derived tier for candidates, else "Sin nivel"."""
    if emp_id in approved_ids and approved_niveles.get(emp_id):
        return approved_niveles[emp_id]
    derived = derived_nivel(emp_id, score_index)
    return derived.value if derived is not None else SIN_NIVEL


def filter_population(
    rows: Sequence[Row],
    beneficiary_user_ids: frozenset[int] | set[int],
    approved_ids: frozenset[int] | set[int],
    approved_niveles: Mapping[int, str],
    score_index: Mapping[int, float],
    filter_type: str = "todos",
    nivel_filter: str = "todos",
) -> tuple[Row, ...]:
    """Filter rows by status facet then by level facet, preserving input order."""
    if filter_type not in FILTER_TYPES:
        raise ValueError(f"Invalid filter_type: {filter_type!r}")
    if nivel_filter not in NIVEL_FILTERS:
        raise ValueError(f"Invalid nivel_filter: {nivel_filter!r}")

    def is_beneficiary(r: Row) -> bool:
        return r.user_id in beneficiary_user_ids and r.id in approved_ids

    items = list(rows)
    if filter_type == "beneficiarios":
        items = [r for r in items if is_beneficiary(r)]
    elif filter_type == "candidatos":
        items = [r for r in items if r.id not in approved_ids]

    if nivel_filter == "candidatos":
        items = [r for r in items if r.id not in approved_ids and r.id in score_index]
    elif nivel_filter != "todos":
        def matches(r: Row) -> bool:
            if r.id in approved_ids:
                if filter_type == "candidatos":
                    return False
                return approved_niveles.get(r.id) == nivel_filter
            if filter_type == "beneficiarios":
                return False
            derived = derived_nivel(r.id, score_index)
            return derived is not None and derived.value == nivel_filter
        items = [r for r in items if matches(r)]

    return tuple(items)


# ---------------------------------------------------------------------------
# Snapshot + memoisation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PopulationSnapshot:
    """Immutable copy of the fetched dataset the filter runs over."""
    revision: int
    rows: tuple[Row, ...]
    beneficiary_user_ids: frozenset[int]
    approved_ids: frozenset[int]
    approved_niveles: Mapping[int, str]
    score_index: Mapping[int, float]

    def filter(self, filter_type: str = "todos", nivel_filter: str = "todos") -> tuple[Row, ...]:
        return filter_population(
            self.rows, self.beneficiary_user_ids, self.approved_ids,
            self.approved_niveles, self.score_index, filter_type, nivel_filter,
        )

    def nivel_of(self, emp_id: int) -> str:
        return effective_nivel(emp_id, self.approved_ids, self.approved_niveles, self.score_index)


class PopulationCache:
    """Holds the latest snapshot and memoises filter results per revision."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshot: PopulationSnapshot | None = None
        self._results: dict[tuple[int, str, str], tuple[Row, ...]] = {}
        self._revision = 0

    @property
    def snapshot(self) -> PopulationSnapshot | None:
        return self._snapshot

    def publish(
        self,
        rows: Iterable[Row],
        beneficiary_user_ids: Iterable[int],
        approved_niveles: Mapping[int, str],
        score_index: Mapping[int, float],
    ) -> PopulationSnapshot:
        """Install a new snapshot and drop memoised results of older revisions."""
        with self._lock:
            self._revision += 1
            snap = PopulationSnapshot(
                revision=self._revision,
                rows=tuple(rows),
                beneficiary_user_ids=frozenset(beneficiary_user_ids),
                approved_ids=frozenset(approved_niveles),
                approved_niveles=dict(approved_niveles),
                score_index=dict(score_index),
            )
            self._snapshot = snap
            self._results.clear()
        log.debug("Published population snapshot rev=%d (%d rows)", snap.revision, len(snap.rows))
        return snap

    def clear(self) -> None:
        with self._lock:
            self._snapshot = None
            self._results.clear()

    def filter(self, filter_type: str = "todos", nivel_filter: str = "todos") -> tuple[Row, ...]:
        with self._lock:
            snap = self._snapshot
            if snap is None:
                raise RuntimeError("publish() has not been called")
            key = (snap.revision, filter_type, nivel_filter)
            cached = self._results.get(key)
        if cached is not None:
            return cached
        result = snap.filter(filter_type, nivel_filter)
        with self._lock:
            if self._snapshot is snap:
                self._results[key] = result
        return result
