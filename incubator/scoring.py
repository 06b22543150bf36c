"""Evaluation scoring: rubric aggregation, eligibility gate and level classification.

Architecture
------------
An evaluation carries six component scores, each capped independently:

- **Impacto** (30), **Equipo** (25), **Innovación/Tecnología** (25),
  **Ventas** (15), **Proyección/Financiación** (5) are entered by the evaluator.
- **Referido regional** (5) is derived, never entered: 5 points when the
  entrepreneur's municipality is known and lies outside the home city.

The total is the plain sum of the six components (ceiling 105).  The four
*requisitos habilitantes* are computed separately and never affect the total.

Levels are derived in two ways:

- an approved quota assignment fixes the level verbatim;
- otherwise the **maximum** recorded score is mapped through fixed thresholds
  (``> 80`` Scale, ``> 50`` Growth, else Starter).

The entrepreneur-facing summary score is an **average**, not the maximum.
"""
from __future__ import annotations

import enum
import logging
import os
from dataclasses import asdict, dataclass, fields
from typing import Iterable

log = logging.getLogger(__name__)

HOME_CITY = os.environ.get("INCUBATOR_HOME_CITY", "Cali")


class ScoreOutOfRange(ValueError):
    """A component score is negative or exceeds its cap."""
    def __init__(self, component: str, value: float, cap: float):
        super().__init__(f"El puntaje de {component} debe estar entre 0 y {cap:g} (recibido {value:g})")
        self.component = component
        self.value = value
        self.cap = cap


# ---------------------------------------------------------------------------
# Rubric
# ---------------------------------------------------------------------------

RUBRIC_CAPS: dict[str, float] = {
    "impacto": 30,
    "equipo": 25,
    "innovacion_tecnologia": 25,
    "ventas": 15,
    "proyeccion_financiacion": 5,
    "referido_regional": 5,
}
RUBRIC_LABELS: dict[str, str] = {
    "impacto": "Impacto",
    "equipo": "Equipo",
    "innovacion_tecnologia": "Innovación",
    "ventas": "Ventas",
    "proyeccion_financiacion": "Proyección",
    "referido_regional": "Referido",
}
MAX_TOTAL: float = sum(RUBRIC_CAPS.values())
REFERRAL_POINTS: float = RUBRIC_CAPS["referido_regional"]


@dataclass(frozen=True)
class ComponentScores:
    impacto: float = 0
    equipo: float = 0
    innovacion_tecnologia: float = 0
    ventas: float = 0
    proyeccion_financiacion: float = 0
    referido_regional: float = 0

    @classmethod
    def from_evaluation(cls, ev) -> ComponentScores:
        """Read the six ``puntaje_*`` columns of an evaluation row (``None`` -> 0)."""
        return cls(**{name: getattr(ev, f"puntaje_{name}", None) or 0 for name in RUBRIC_CAPS})

    def as_columns(self) -> dict[str, float]:
        return {f"puntaje_{k}": v for k, v in asdict(self).items()}


@dataclass(frozen=True)
class CategoryScore:
    key: str
    label: str
    puntaje: float
    max: float


@dataclass(frozen=True)
class ScoreBreakdown:
    total: float
    max_total: float
    porcentaje: float
    categorias: list[CategoryScore]


def validate_components(scores: ComponentScores) -> None:
    """Raise :class:`ScoreOutOfRange` for the first component outside ``[0, cap]``."""
    for f in fields(scores):
        value = getattr(scores, f.name)
        cap = RUBRIC_CAPS[f.name]
        if value < 0 or value > cap:
            raise ScoreOutOfRange(f.name, value, cap)


def aggregate(scores: ComponentScores) -> ScoreBreakdown:
    """Validate and sum the six components; no rounding, no normalisation."""
    validate_components(scores)
    categorias = [
        CategoryScore(key=k, label=RUBRIC_LABELS[k], puntaje=getattr(scores, k), max=cap)
        for k, cap in RUBRIC_CAPS.items()
    ]
    total = sum(c.puntaje for c in categorias)
    return ScoreBreakdown(
        total=total,
        max_total=MAX_TOTAL,
        porcentaje=total / MAX_TOTAL * 100,
        categorias=categorias,
    )


def regional_referral_score(municipio: str | None, home_city: str = HOME_CITY) -> float:
    """5 points when the municipality is known and differs from the home city."""
    m = (municipio or "").strip()
    if not m:
        return 0
    if m.casefold() == home_city.strip().casefold():
        return 0
    return REFERRAL_POINTS


# ---------------------------------------------------------------------------
# Eligibility gate (requisitos habilitantes)
# ---------------------------------------------------------------------------

MIN_TEAM_SIZE = 2

ELIGIBILITY_LABELS: dict[str, str] = {
    "cumple_ubicacion": "Emprendedor ubicado en jurisdicción de CCC o suroccidente colombiano",
    "cumple_equipo_minimo": "Equipo de trabajo de al menos 2 personas",
    "cumple_dedicacion": "Al menos 1 persona dedicada al 100%",
    "cumple_interes": "Interés en crear negocio innovador de base tecnológica/científica",
}


@dataclass(frozen=True)
class EligibilityFlags:
    cumple_ubicacion: bool
    cumple_equipo_minimo: bool
    cumple_dedicacion: bool
    cumple_interes: bool

    def warnings(self) -> list[str]:
        """Labels of failing requirements, shown to the evaluator; never blocking."""
        return [ELIGIBILITY_LABELS[f.name] for f in fields(self) if not getattr(self, f.name)]

    def as_columns(self) -> dict[str, bool]:
        return asdict(self)


def check_eligibility(team, descripcion: str | None) -> EligibilityFlags:
    """Evaluate the four requirements from the team record and the description.

    ``team`` may be ``None`` (no team registered), in which case both team
    requirements fail.
    """
    equipo_total = (getattr(team, "equipo_total", None) or 0) if team is not None else 0
    full_time = (getattr(team, "personas_full_time", None) or 0) if team is not None else 0
    return EligibilityFlags(
        # TODO: check departamento/municipio against the CCC jurisdiction once the list is agreed
        cumple_ubicacion=True,
        cumple_equipo_minimo=equipo_total >= MIN_TEAM_SIZE,
        cumple_dedicacion=full_time >= 1,
        cumple_interes=bool((descripcion or "").strip()),
    )


# ---------------------------------------------------------------------------
# Level classifier
# ---------------------------------------------------------------------------


class Nivel(str, enum.Enum):
    STARTER = "Starter"
    GROWTH = "Growth"
    SCALE = "Scale"


SIN_EVALUAR = "Sin evaluar"

SCALE_THRESHOLD = 80
GROWTH_THRESHOLD = 50


def nivel_from_score(score: float | None) -> Nivel | str:
    """Map a total score to a level; ``None`` means not evaluated."""
    if score is None:
        return SIN_EVALUAR
    if score > SCALE_THRESHOLD:
        return Nivel.SCALE
    if score > GROWTH_THRESHOLD:
        return Nivel.GROWTH
    return Nivel.STARTER


def max_score(scores: Iterable[float | None]) -> float | None:
    """Best recorded score, used for tier eligibility."""
    present = [s for s in scores if s is not None]
    return max(present) if present else None


def average_score(scores: Iterable[float | None]) -> float | None:
    """Representative score, used for the profile summary and rankings."""
    present = [s for s in scores if s is not None]
    return sum(present) / len(present) if present else None


def parse_nivel(value: str | None) -> Nivel | None:
    if not value:
        return None
    try:
        return Nivel(value)
    except ValueError:
        log.warning("Unknown nivel %r", value)
        return None


def classify(approved_nivel: str | Nivel | None, scores: Iterable[float | None]) -> Nivel | str:
    """Effective level: the approved quota tier wins, else the max score decides."""
    if approved_nivel:
        nivel = approved_nivel if isinstance(approved_nivel, Nivel) else parse_nivel(approved_nivel)
        if nivel is not None:
            return nivel
    return nivel_from_score(max_score(scores))


def nivel_value(nivel: Nivel | str) -> str:
    return nivel.value if isinstance(nivel, Nivel) else nivel
