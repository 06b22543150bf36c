"""Shared business logic for the incubator API.

Services take a SQLAlchemy session plus ORM objects or plain values, mutate or
query the store, and return ORM objects or plain dicts.  They never commit:
the caller owns the transaction.  Domain failures are raised as
:class:`IncubatorError` subclasses; the API layer maps them to HTTP codes.
"""
from __future__ import annotations

import json
import logging
import re
from collections import Counter
from datetime import date, datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from incubator import notifier
from incubator.exporter import DASHBOARD_SHEETS, ExportRow, yes_no
from incubator.models import (
    AdvisoryProfile,
    Authorization,
    Booking,
    ClassProgress,
    Diagnostic,
    Entrepreneurship,
    Evaluation,
    Financing,
    Guardian,
    LabClass,
    MentorAssignment,
    MentorAvailability,
    Module,
    OperatorLevel,
    Projection,
    QuotaAssignment,
    Submission,
    Task,
    Team,
    User,
    UserRole,
)
from incubator.population import PopulationCache, PopulationSnapshot, Row, SIN_NIVEL, build_score_index
from incubator.scoring import (
    ComponentScores,
    EligibilityFlags,
    ScoreOutOfRange,
    aggregate,
    average_score,
    check_eligibility,
    classify,
    max_score,
    nivel_from_score,
    nivel_value,
    regional_referral_score,
    validate_components,
)
from incubator.utils import age_from_birth_year, isoformat, json_parse

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class IncubatorError(Exception):
    """Base class for domain failures surfaced to the caller."""


class NotFound(IncubatorError):
    pass


class ValidationFailed(IncubatorError):
    pass


class EvaluationLocked(IncubatorError):
    """A submitted evaluation cannot be edited by its author."""


class JuryFull(IncubatorError):
    pass


class QuotaLimitReached(IncubatorError):
    pass


class DuplicateQuota(IncubatorError):
    pass


class PendingEvaluations(IncubatorError):
    """Assigned jurors have not all submitted their evaluations."""


class SubmissionClosed(IncubatorError):
    pass


# ---------------------------------------------------------------------------
# Shared field tuples & constants
# ---------------------------------------------------------------------------

ENTREPRENEURSHIP_FIELDS = (
    "nombre", "descripcion", "categoria", "etapa", "nivel_definitivo",
    "industria_vertical", "alcance_mercado", "tipo_cliente", "pagina_web",
    "ano_fundacion", "ventas_ultimo_ano", "nivel_innovacion",
    "integracion_tecnologia", "plan_negocios", "formalizacion",
    "estado_unidad_productiva",
)

TEAM_FIELDS = (
    "equipo_total", "personas_full_time", "fundadoras", "colaboradoras",
    "colaboradores_jovenes", "equipo_tecnico", "organigrama", "tipo_decisiones",
)

FINANCING_FIELDS = (
    "busca_financiamiento", "monto_buscado", "financiamiento_previo", "monto_recibido",
    "tipo_actor", "tipo_inversion", "etapa",
)

PROJECTION_FIELDS = (
    "principales_objetivos", "desafios", "impacto", "acciones_crecimiento",
    "decisiones_acciones_crecimiento", "intencion_internacionalizacion",
)

AUTHORIZATION_FIELDS = ("tratamiento_datos", "datos_sensibles", "correo", "celular")

GUARDIAN_FIELDS = (
    "nombres", "apellidos", "relacion_con_menor", "email", "celular",
    "tipo_documento", "numero_identificacion",
)

MODULE_FIELDS = ("titulo", "descripcion", "duracion", "orden", "activo", "imagen_url", "nivel")

CLASS_FIELDS = ("titulo", "descripcion", "contenido", "video_url", "duracion_minutos", "orden")

USER_FIELDS = (
    "nombres", "apellidos", "email", "celular", "tipo_documento",
    "numero_identificacion", "genero", "direccion", "ano_nacimiento",
    "identificacion_etnica", "biografia", "nivel_ingles", "menor_de_edad",
    "departamento", "municipio",
)

EVALUATION_SCORE_FIELDS = (
    "puntaje_impacto", "puntaje_equipo", "puntaje_innovacion_tecnologia",
    "puntaje_ventas", "puntaje_proyeccion_financiacion",
)

EVALUATION_TEXT_FIELDS = (
    "impacto_texto", "equipo_texto", "innovacion_tecnologia_texto",
    "ventas_texto", "proyeccion_financiacion_texto", "comentarios_adicionales",
)

EVALUATION_FIELDS = (
    "id", "emprendimiento_id", "mentor_id", "tipo_evaluacion", "evaluacion_base_id",
    "estado", "puede_editar", "visible_para_usuario", "nivel", "puntaje",
    *EVALUATION_SCORE_FIELDS, "puntaje_referido_regional", *EVALUATION_TEXT_FIELDS,
    "referido_regional", "cumple_ubicacion", "cumple_equipo_minimo",
    "cumple_dedicacion", "cumple_interes",
)

CCC = "ccc"
JURADO = "jurado"
BORRADOR = "borrador"
ENVIADA = "enviada"
APROBADO = "aprobado"
RECHAZADO = "rechazado"
BENEFICIARIO = "beneficiario"

MAX_JURY_EVALUATIONS = 3

# nivel -> (total capacity, per-cohort capacity or None when the tier has no cohorts)
QUOTA_LIMITS: dict[str, tuple[int, int | None]] = {
    "Starter": (100, 50),
    "Growth": (80, 40),
    "Scale": (45, None),
}
COHORTS = (1, 2)

RANKING_LIMIT = 100

SUBMISSION_STATES = ("entregado", "revisado", "aprobado", "rechazado")


# ---------------------------------------------------------------------------
# Lookup & mutation helpers
# ---------------------------------------------------------------------------


def get_entity(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if obj is None:
        raise NotFound(f"{label} not found")
    return obj


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            setattr(obj, field, val)


def role_names(user: User) -> list[str]:
    return sorted(r.role for r in user.roles)


def approved_quota(emp: Entrepreneurship) -> QuotaAssignment | None:
    return next((c for c in emp.cupos if c.estado == APROBADO), None)


def latest_quota(emp: Entrepreneurship) -> QuotaAssignment | None:
    approved = approved_quota(emp)
    if approved is not None:
        return approved
    return max(emp.cupos, key=lambda c: (c.fecha_asignacion or datetime.min, c.id), default=None)


def is_beneficiary(emp: Entrepreneurship) -> bool:
    return approved_quota(emp) is not None and BENEFICIARIO in role_names(emp.user)


def effective_level(emp: Entrepreneurship) -> str:
    """Approved quota tier, else the tier of the best recorded evaluation."""
    approved = approved_quota(emp)
    return nivel_value(classify(approved.nivel if approved else None, (e.puntaje for e in emp.evaluaciones)))


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def columns_dict(obj, exclude: tuple[str, ...] = ("id", "emprendimiento_id")) -> dict[str, Any] | None:
    if obj is None:
        return None
    out = {}
    for col in obj.__table__.columns:
        if col.name in exclude:
            continue
        val = getattr(obj, col.name)
        out[col.name] = isoformat(val) if isinstance(val, (datetime, date)) else val
    return out


def user_summary(user: User) -> dict:
    return {
        "id": user.id, "nombres": user.nombres, "apellidos": user.apellidos,
        "email": user.email, "departamento": user.departamento,
        "municipio": user.municipio, "roles": role_names(user),
    }


def entrepreneurship_summary(emp: Entrepreneurship) -> dict:
    return {
        "id": emp.id, "user_id": emp.user_id, "nombre": emp.nombre,
        "descripcion": emp.descripcion, "categoria": emp.categoria, "etapa": emp.etapa,
        "nivel_definitivo": emp.nivel_definitivo,
        "nivel": effective_level(emp),
        "es_beneficiario": is_beneficiary(emp),
        "puntaje_maximo": max_score(e.puntaje for e in emp.evaluaciones),
        "evaluaciones": len(emp.evaluaciones),
    }


def evaluation_dict(ev: Evaluation) -> dict:
    d = {f: getattr(ev, f) for f in EVALUATION_FIELDS}
    d["advertencias"] = EligibilityFlags(
        ev.cumple_ubicacion, ev.cumple_equipo_minimo, ev.cumple_dedicacion, ev.cumple_interes,
    ).warnings()
    d["created_at"] = isoformat(ev.created_at)
    return d


def quota_dict(q: QuotaAssignment) -> dict:
    return {
        "id": q.id, "emprendimiento_id": q.emprendimiento_id, "nivel": q.nivel,
        "cohorte": q.cohorte, "estado": q.estado, "notas": q.notas or "",
        "fecha_asignacion": isoformat(q.fecha_asignacion),
    }


def assignment_dict(a: MentorAssignment) -> dict:
    return {
        "id": a.id, "mentor_id": a.mentor_id, "emprendimiento_id": a.emprendimiento_id,
        "es_jurado": a.es_jurado, "activo": a.activo,
    }


def submission_dict(s: Submission) -> dict:
    return {
        "id": s.id, "tarea_id": s.tarea_id, "user_id": s.user_id,
        "comentario": s.comentario or "", "archivos": json_parse(s.archivos_json, []),
        "estado": s.estado, "feedback": s.feedback or "", "nota": s.nota,
        "fecha_entrega": isoformat(s.fecha_entrega),
    }


def booking_dict(b: Booking) -> dict:
    return {
        "id": b.id, "perfil_asesoria_id": b.perfil_asesoria_id,
        "beneficiario_id": b.beneficiario_id, "mentor_id": b.mentor_id,
        "fecha_reserva": isoformat(b.fecha_reserva), "estado": b.estado,
        "tipo_reserva": b.tipo_reserva,
    }


def candidate_detail(user: User) -> dict:
    """Everything known about a candidate, shaped for the exporter."""
    base = columns_dict(user, exclude=("id",)) or {}
    base["id"] = user.id
    base["roles"] = role_names(user)
    base["autorizaciones"] = columns_dict(user.autorizacion, exclude=("id", "user_id"))
    base["acudiente"] = columns_dict(user.acudiente, exclude=("id", "menor_id"))
    emp = user.emprendimiento
    if emp is None:
        base.update({
            "emprendimiento": None, "equipo": None, "financiamiento": None,
            "proyecciones": None, "diagnostico": None, "evaluaciones_detalle": [],
            "cupo": None, "evaluaciones": 0, "nivel": SIN_NIVEL,
        })
        return base
    evals = sorted(emp.evaluaciones, key=lambda e: (e.created_at or datetime.min, e.id), reverse=True)
    cupo = latest_quota(emp)
    base.update({
        "emprendimiento": columns_dict(emp, exclude=("user_id",)),
        "equipo": columns_dict(emp.equipo),
        "financiamiento": columns_dict(emp.financiamiento),
        "proyecciones": columns_dict(emp.proyecciones),
        "diagnostico": columns_dict(emp.diagnostico),
        "evaluaciones_detalle": [evaluation_dict(e) for e in evals],
        "cupo": quota_dict(cupo) if cupo else None,
        "evaluaciones": len(evals),
        "nivel": effective_level(emp),
    })
    return base


# ---------------------------------------------------------------------------
# Users & entrepreneurships
# ---------------------------------------------------------------------------


def create_user(session: Session, data: dict[str, Any]) -> User:
    """Create a user with roles (caller must commit)."""
    user = User(**{f: data[f] for f in USER_FIELDS if data.get(f) is not None})
    user.roles = [UserRole(role=r) for r in dict.fromkeys(data.get("roles") or [])]
    session.add(user)
    session.flush()
    return user


def _upsert_child(parent, attr: str, model, data: dict[str, Any] | None, fields: tuple[str, ...]):
    """Create the one-to-one child on first write, then apply only the given fields."""
    if data is None:
        return getattr(parent, attr)
    if getattr(parent, attr) is None:
        setattr(parent, attr, model())
    child = getattr(parent, attr)
    apply_updates(child, data, fields)
    return child


def _upsert_sections(emp: Entrepreneurship, data: dict[str, Any]) -> None:
    _upsert_child(emp, "equipo", Team, data.get("equipo"), TEAM_FIELDS)
    _upsert_child(emp, "financiamiento", Financing, data.get("financiamiento"), FINANCING_FIELDS)
    _upsert_child(emp, "proyecciones", Projection, data.get("proyecciones"), PROJECTION_FIELDS)


def create_entrepreneurship(session: Session, data: dict[str, Any]) -> Entrepreneurship:
    """Create the venture profile owned by ``data['user_id']`` (caller must commit)."""
    user = get_entity(session, User, data["user_id"], "User")
    if user.emprendimiento is not None:
        raise ValidationFailed("El usuario ya tiene un emprendimiento registrado")
    emp = Entrepreneurship(user=user, nombre=data["nombre"])
    apply_updates(emp, data, ENTREPRENEURSHIP_FIELDS)
    _upsert_sections(emp, data)
    session.add(emp)
    session.flush()
    return emp


def update_entrepreneurship(emp: Entrepreneurship, updates: dict[str, Any]) -> Entrepreneurship:
    apply_updates(emp, updates, ENTREPRENEURSHIP_FIELDS)
    _upsert_sections(emp, updates)
    return emp


def save_financing(emp: Entrepreneurship, data: dict[str, Any]) -> Financing:
    return _upsert_child(emp, "financiamiento", Financing, data, FINANCING_FIELDS)


def save_projection(emp: Entrepreneurship, data: dict[str, Any]) -> Projection:
    return _upsert_child(emp, "proyecciones", Projection, data, PROJECTION_FIELDS)


def save_diagnostic(emp: Entrepreneurship, contenido: str, visible: bool = True) -> Diagnostic:
    """Write the staff diagnostic; blank content is rejected."""
    if not (contenido or "").strip():
        raise ValidationFailed("Escribe el diagnóstico")
    if emp.diagnostico is None:
        emp.diagnostico = Diagnostic()
    emp.diagnostico.contenido = contenido.strip()
    emp.diagnostico.visible_para_usuario = visible
    emp.diagnostico.updated_at = datetime.now()
    log.info("Diagnostic for %s saved (visible=%s)", emp.nombre, visible)
    return emp.diagnostico


def set_authorizations(user: User, data: dict[str, Any]) -> Authorization:
    return _upsert_child(user, "autorizacion", Authorization, data, AUTHORIZATION_FIELDS)


def save_guardian(user: User, data: dict[str, Any]) -> Guardian:
    """Guardian details are only kept for minors."""
    if not user.menor_de_edad:
        raise ValidationFailed("Solo los menores de edad registran acudiente")
    return _upsert_child(user, "acudiente", Guardian, data, GUARDIAN_FIELDS)


# ---------------------------------------------------------------------------
# Evaluations
# ---------------------------------------------------------------------------


def ccc_evaluation(emp: Entrepreneurship) -> Evaluation | None:
    return next((e for e in emp.evaluaciones if e.tipo_evaluacion == CCC), None)


def jury_evaluations(emp: Entrepreneurship) -> list[Evaluation]:
    return [e for e in emp.evaluaciones if e.tipo_evaluacion == JURADO]


def _component_scores(payload: dict[str, Any], referral: float) -> ComponentScores:
    scores = ComponentScores(
        impacto=payload.get("puntaje_impacto") or 0,
        equipo=payload.get("puntaje_equipo") or 0,
        innovacion_tecnologia=payload.get("puntaje_innovacion_tecnologia") or 0,
        ventas=payload.get("puntaje_ventas") or 0,
        proyeccion_financiacion=payload.get("puntaje_proyeccion_financiacion") or 0,
        referido_regional=referral,
    )
    try:
        validate_components(scores)
    except ScoreOutOfRange as exc:
        raise ValidationFailed(str(exc)) from exc
    return scores


def _fill_evaluation(
    ev: Evaluation, payload: dict[str, Any], scores: ComponentScores, flags: EligibilityFlags,
) -> None:
    breakdown = aggregate(scores)
    for col, val in scores.as_columns().items():
        setattr(ev, col, val)
    for col, val in flags.as_columns().items():
        setattr(ev, col, val)
    for field in EVALUATION_TEXT_FIELDS:
        if payload.get(field) is not None:
            setattr(ev, field, payload[field])
    ev.puntaje = breakdown.total
    ev.nivel = nivel_value(nivel_from_score(breakdown.total))
    ev.estado = payload.get("estado") or BORRADOR
    ev.puede_editar = ev.estado == BORRADOR


def _editable(ev: Evaluation) -> None:
    if not ev.puede_editar or ev.estado == ENVIADA:
        raise EvaluationLocked("La evaluación ya fue enviada y no puede modificarse")


def save_ccc_evaluation(
    session: Session, emp: Entrepreneurship, mentor_id: int | None, payload: dict[str, Any],
) -> Evaluation:
    """Create or update the staff (CCC) evaluation (caller must commit).

    Regional referral and eligibility flags are derived from the stored user
    and team data, never taken from the payload.
    """
    ev = ccc_evaluation(emp)
    if ev is not None:
        _editable(ev)
    referral = regional_referral_score(emp.user.municipio if emp.user else None)
    scores = _component_scores(payload, referral)
    flags = check_eligibility(emp.equipo, emp.descripcion)
    if ev is None:
        ev = Evaluation(emprendimiento_id=emp.id, tipo_evaluacion=CCC, mentor_id=mentor_id)
        emp.evaluaciones.append(ev)
    _fill_evaluation(ev, payload, scores, flags)
    ev.referido_regional = emp.user.municipio if emp.user and referral else ""
    session.flush()
    if flags.warnings():
        log.info("CCC evaluation %d for %s saved with warnings: %s", ev.id, emp.nombre, flags.warnings())
    return ev


def _active_jury_assignment(session: Session, mentor_id: int, emp_id: int) -> MentorAssignment | None:
    return session.execute(
        select(MentorAssignment).where(
            MentorAssignment.mentor_id == mentor_id,
            MentorAssignment.emprendimiento_id == emp_id,
            MentorAssignment.es_jurado.is_(True),
            MentorAssignment.activo.is_(True),
        )
    ).scalars().first()


def save_jury_evaluation(
    session: Session, emp: Entrepreneurship, mentor_id: int, payload: dict[str, Any],
) -> Evaluation:
    """Create or update a juror's evaluation (caller must commit).

    Requires the CCC evaluation: referral points and eligibility flags are
    inherited from it.  A juror has one evaluation per entrepreneurship and at
    most :data:`MAX_JURY_EVALUATIONS` jurors evaluate each one.
    """
    base = ccc_evaluation(emp)
    if base is None:
        raise ValidationFailed("Este emprendimiento aún no tiene evaluación CCC")
    if _active_jury_assignment(session, mentor_id, emp.id) is None:
        raise ValidationFailed("El mentor no está asignado como jurado de este emprendimiento")

    juries = jury_evaluations(emp)
    ev = next((e for e in juries if e.mentor_id == mentor_id), None)
    if ev is not None:
        _editable(ev)
    elif len(juries) >= MAX_JURY_EVALUATIONS:
        raise JuryFull(f"El emprendimiento ya tiene {MAX_JURY_EVALUATIONS} evaluaciones de jurado")
    scores = _component_scores(payload, base.puntaje_referido_regional or 0)
    if ev is None:
        ev = Evaluation(
            emprendimiento_id=emp.id, tipo_evaluacion=JURADO,
            mentor_id=mentor_id, evaluacion_base_id=base.id,
        )
        emp.evaluaciones.append(ev)
    flags = EligibilityFlags(
        base.cumple_ubicacion, base.cumple_equipo_minimo, base.cumple_dedicacion, base.cumple_interes,
    )
    _fill_evaluation(ev, payload, scores, flags)
    ev.referido_regional = base.referido_regional
    session.flush()
    log.info("Jury evaluation %d (%s) for %s: %.1f", ev.id, ev.estado, emp.nombre, ev.puntaje)
    return ev


def set_evaluation_visibility(ev: Evaluation, visible: bool) -> Evaluation:
    ev.visible_para_usuario = visible
    return ev


def list_evaluations(
    session: Session, *, emprendimiento_id: int | None = None,
    tipo: str | None = None, estado: str | None = None, mentor_id: int | None = None,
) -> list[Evaluation]:
    query = select(Evaluation).order_by(Evaluation.created_at.desc(), Evaluation.id.desc())
    if emprendimiento_id is not None:
        query = query.where(Evaluation.emprendimiento_id == emprendimiento_id)
    if tipo:
        query = query.where(Evaluation.tipo_evaluacion == tipo)
    if estado:
        query = query.where(Evaluation.estado == estado)
    if mentor_id is not None:
        query = query.where(Evaluation.mentor_id == mentor_id)
    return list(session.execute(query).scalars().all())


def compare_evaluations(emp: Entrepreneurship) -> dict:
    """CCC evaluation side by side with the jurors', per component and in total."""
    ccc = ccc_evaluation(emp)
    juries = [e for e in jury_evaluations(emp) if e.estado == ENVIADA]
    comparison = []
    for field in (*EVALUATION_SCORE_FIELDS, "puntaje_referido_regional", "puntaje"):
        jury_avg = average_score(getattr(e, field) for e in juries)
        ccc_val = getattr(ccc, field) if ccc else None
        comparison.append({
            "campo": field,
            "ccc": ccc_val,
            "promedio_jurado": jury_avg,
            "diferencia": (jury_avg - ccc_val) if jury_avg is not None and ccc_val is not None else None,
        })
    return {
        "emprendimiento_id": emp.id,
        "ccc": evaluation_dict(ccc) if ccc else None,
        "jurado": [evaluation_dict(e) for e in juries],
        "comparacion": comparison,
    }


# ---------------------------------------------------------------------------
# Mentor / juror assignments
# ---------------------------------------------------------------------------


def assign_mentor(session: Session, mentor_id: int, emp_id: int, es_jurado: bool = False) -> MentorAssignment:
    """Link a mentor to an entrepreneurship, reactivating an old link if present."""
    _require_mentor(session, mentor_id)
    get_entity(session, Entrepreneurship, emp_id, "Entrepreneurship")
    existing = session.execute(
        select(MentorAssignment).where(
            MentorAssignment.mentor_id == mentor_id,
            MentorAssignment.emprendimiento_id == emp_id,
        )
    ).scalars().first()
    if existing is not None:
        existing.activo = True
        existing.es_jurado = es_jurado
        session.flush()
        return existing
    assignment = MentorAssignment(mentor_id=mentor_id, emprendimiento_id=emp_id, es_jurado=es_jurado)
    session.add(assignment)
    session.flush()
    return assignment


def deactivate_assignment(assignment: MentorAssignment) -> MentorAssignment:
    assignment.activo = False
    return assignment


def list_assignments(
    session: Session, *, mentor_id: int | None = None, emprendimiento_id: int | None = None,
    es_jurado: bool | None = None, include_inactive: bool = False,
) -> list[MentorAssignment]:
    query = select(MentorAssignment).order_by(MentorAssignment.id)
    if mentor_id is not None:
        query = query.where(MentorAssignment.mentor_id == mentor_id)
    if emprendimiento_id is not None:
        query = query.where(MentorAssignment.emprendimiento_id == emprendimiento_id)
    if es_jurado is not None:
        query = query.where(MentorAssignment.es_jurado.is_(es_jurado))
    if not include_inactive:
        query = query.where(MentorAssignment.activo.is_(True))
    return list(session.execute(query).scalars().all())


# ---------------------------------------------------------------------------
# Quota assignment
# ---------------------------------------------------------------------------


def jury_progress(session: Session, emp: Entrepreneurship) -> dict:
    assigned = len(list_assignments(session, emprendimiento_id=emp.id, es_jurado=True))
    completed = sum(1 for e in jury_evaluations(emp) if e.estado == ENVIADA)
    return {"mentores_asignados": assigned, "evaluaciones_completadas": completed}


def quota_usage(session: Session) -> dict[str, dict]:
    rows = session.execute(
        select(QuotaAssignment.nivel, QuotaAssignment.cohorte, func.count())
        .where(QuotaAssignment.estado == APROBADO)
        .group_by(QuotaAssignment.nivel, QuotaAssignment.cohorte)
    ).all()
    usage = {
        nivel: {"usados": 0, "limite": total, "limite_cohorte": per_cohort,
                "cohortes": {c: 0 for c in COHORTS} if per_cohort else {}}
        for nivel, (total, per_cohort) in QUOTA_LIMITS.items()
    }
    for nivel, cohorte, count in rows:
        if nivel not in usage:
            log.warning("Approved quota with unknown nivel %r", nivel)
            continue
        usage[nivel]["usados"] += count
        if usage[nivel]["limite_cohorte"]:
            usage[nivel]["cohortes"][cohorte] = usage[nivel]["cohortes"].get(cohorte, 0) + count
    return usage


def quota_candidates(session: Session, nivel: str) -> list[dict]:
    """Entrepreneurships without an approved quota whose best score maps to ``nivel``."""
    emps = session.execute(select(Entrepreneurship).order_by(Entrepreneurship.id)).scalars().all()
    out = []
    for emp in emps:
        if approved_quota(emp) is not None:
            continue
        best = max_score(e.puntaje for e in emp.evaluaciones)
        if best is None or nivel_value(nivel_from_score(best)) != nivel:
            continue
        progress = jury_progress(session, emp)
        cupo = latest_quota(emp)
        out.append({
            "emprendimiento_id": emp.id,
            "nombre": emp.nombre,
            "beneficiario": f"{emp.user.nombres} {emp.user.apellidos}".strip(),
            "puntaje_maximo": best,
            **progress,
            "puede_aprobar": progress["evaluaciones_completadas"] >= progress["mentores_asignados"],
            "estado_cupo": cupo.estado if cupo else None,
        })
    out.sort(key=lambda c: c["puntaje_maximo"], reverse=True)
    return out


def _in_level(emp: Entrepreneurship, nivel: str) -> bool:
    cupo = latest_quota(emp)
    return effective_level(emp) == nivel or (cupo is not None and cupo.nivel == nivel)


def quota_level_rows(session: Session, nivel: str, estado: str | None = None) -> list[dict]:
    """Scored entrepreneurships of a tier with their quota state, best average first."""
    if nivel not in QUOTA_LIMITS:
        raise ValidationFailed(f"Nivel inválido: {nivel}")
    emps = session.execute(select(Entrepreneurship).order_by(Entrepreneurship.id)).scalars().all()
    out = []
    for emp in emps:
        scores = [e.puntaje for e in emp.evaluaciones if e.puntaje is not None]
        if not scores or not _in_level(emp, nivel):
            continue
        cupo = latest_quota(emp)
        if estado and (cupo.estado if cupo else "pendiente") != estado:
            continue
        out.append({
            "emprendimiento_id": emp.id,
            "nombre": emp.nombre,
            "beneficiario": f"{emp.user.nombres} {emp.user.apellidos}".strip(),
            "puntaje_promedio": round(sum(scores) / len(scores), 2),
            "total_evaluaciones": len(scores),
            **jury_progress(session, emp),
            "estado_cupo": cupo.estado if cupo else None,
            "cohorte": cupo.cohorte if cupo and QUOTA_LIMITS[nivel][1] else None,
        })
    out.sort(key=lambda r: r["puntaje_promedio"], reverse=True)
    return out


def has_cohorts(nivel: str) -> bool:
    return QUOTA_LIMITS.get(nivel, (0, None))[1] is not None


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------


def _require_mentor(session: Session, mentor_id: int) -> User:
    mentor = get_entity(session, User, mentor_id, "Mentor")
    if "mentor" not in role_names(mentor):
        raise ValidationFailed("El usuario no tiene rol de mentor")
    return mentor


def assign_operator(session: Session, mentor_id: int, niveles: Iterable[str]) -> list[OperatorLevel]:
    """Make a mentor operator of the given tiers, reactivating old rows (caller must commit)."""
    _require_mentor(session, mentor_id)
    out = []
    for nivel in dict.fromkeys(niveles):
        if nivel not in QUOTA_LIMITS:
            raise ValidationFailed(f"Nivel inválido: {nivel}")
        row = session.execute(
            select(OperatorLevel).where(OperatorLevel.mentor_id == mentor_id, OperatorLevel.nivel == nivel)
        ).scalars().first()
        if row is None:
            row = OperatorLevel(mentor_id=mentor_id, nivel=nivel)
            session.add(row)
        row.activo = True
        out.append(row)
    session.flush()
    log.info("Mentor %d operates %s", mentor_id, ", ".join(r.nivel for r in out))
    return out


def remove_operator(session: Session, mentor_id: int, nivel: str | None = None) -> int:
    """Deactivate one tier, or every tier when ``nivel`` is omitted; returns rows touched."""
    query = select(OperatorLevel).where(OperatorLevel.mentor_id == mentor_id, OperatorLevel.activo.is_(True))
    if nivel:
        query = query.where(OperatorLevel.nivel == nivel)
    rows = session.execute(query).scalars().all()
    if not rows:
        raise NotFound("Operator assignment not found")
    for row in rows:
        row.activo = False
    session.flush()
    return len(rows)


def operator_levels(session: Session, mentor_id: int) -> list[str]:
    return list(session.execute(
        select(OperatorLevel.nivel)
        .where(OperatorLevel.mentor_id == mentor_id, OperatorLevel.activo.is_(True))
        .order_by(OperatorLevel.nivel)
    ).scalars().all())


def list_operators(session: Session) -> list[dict]:
    rows = session.execute(
        select(OperatorLevel).where(OperatorLevel.activo.is_(True)).order_by(OperatorLevel.mentor_id, OperatorLevel.nivel)
    ).scalars().all()
    by_mentor: dict[int, list[str]] = {}
    for row in rows:
        by_mentor.setdefault(row.mentor_id, []).append(row.nivel)
    return [{"mentor_id": m, "niveles": niveles} for m, niveles in by_mentor.items()]


def _quota_row(session: Session, emp: Entrepreneurship) -> QuotaAssignment:
    existing = next((c for c in emp.cupos if c.estado != APROBADO), None)
    if existing is not None:
        return existing
    row = QuotaAssignment(emprendimiento_id=emp.id)
    emp.cupos.append(row)
    return row


def approve_quota(
    session: Session, emp: Entrepreneurship, nivel: str, cohorte: int = 1,
    admin_id: int | None = None, notas: str = "",
) -> QuotaAssignment:
    """Grant a quota, promoting the candidate to beneficiary (caller must commit).

    Checks tier and cohort capacity, that every assigned juror has submitted,
    and that the entrepreneurship has no other approved quota.  All of its
    evaluations become visible to the entrepreneur.
    """
    if nivel not in QUOTA_LIMITS:
        raise ValidationFailed(f"Nivel inválido: {nivel}")
    if approved_quota(emp) is not None:
        raise DuplicateQuota("Este emprendimiento ya tiene un cupo aprobado")

    total, per_cohort = QUOTA_LIMITS[nivel]
    usage = quota_usage(session)[nivel]
    if usage["usados"] >= total:
        raise QuotaLimitReached(f"No hay cupos disponibles para {nivel} ({total} máximo)")
    if per_cohort is not None:
        if cohorte not in COHORTS:
            raise ValidationFailed(f"Cohorte inválida: {cohorte}")
        if usage["cohortes"].get(cohorte, 0) >= per_cohort:
            raise QuotaLimitReached(f"La cohorte {cohorte} de {nivel} está llena ({per_cohort} máximo)")
    else:
        cohorte = 1

    progress = jury_progress(session, emp)
    if progress["evaluaciones_completadas"] < progress["mentores_asignados"]:
        raise PendingEvaluations(
            f"Faltan evaluaciones de jurado ({progress['evaluaciones_completadas']}"
            f"/{progress['mentores_asignados']})"
        )

    row = _quota_row(session, emp)
    row.nivel = nivel
    row.cohorte = cohorte
    row.estado = APROBADO
    row.aprobado_por = admin_id
    row.notas = notas or ""
    row.fecha_asignacion = datetime.now()
    for ev in emp.evaluaciones:
        ev.visible_para_usuario = True
    session.flush()
    log.info("Approved %s quota (cohort %d) for %s", nivel, cohorte, emp.nombre)
    return row


def reject_quota(
    session: Session, emp: Entrepreneurship, nivel: str, cohorte: int = 1,
    admin_id: int | None = None, notas: str = "",
) -> QuotaAssignment:
    if approved_quota(emp) is not None:
        raise DuplicateQuota("Este emprendimiento ya tiene un cupo aprobado; reviértelo primero")
    row = _quota_row(session, emp)
    row.nivel = nivel
    row.cohorte = cohorte
    row.estado = RECHAZADO
    row.aprobado_por = admin_id
    row.notas = notas or ""
    row.fecha_asignacion = datetime.now()
    session.flush()
    log.info("Rejected %s quota for %s", nivel, emp.nombre)
    return row


def revert_quota(session: Session, row: QuotaAssignment) -> None:
    """Delete a quota decision so the entrepreneurship is a plain candidate again."""
    log.info("Reverting %s quota %d (%s)", row.estado, row.id, row.nivel)
    row.emprendimiento.cupos.remove(row)
    session.delete(row)
    session.flush()


def quota_payload(emp: Entrepreneurship, row: QuotaAssignment) -> dict[str, Any]:
    user = emp.user
    return {
        "accion": "aprobado" if row.estado == APROBADO else "rechazado",
        "emprendimiento": emp.nombre,
        "nombre": f"{user.nombres} {user.apellidos}".strip(),
        "email": user.email,
        "celular": user.celular,
        "nivel": row.nivel,
        "cohorte": row.cohorte,
    }


async def notify_quota(payload: dict[str, Any]) -> notifier.NotificationResult:
    result = await notifier.notify_quota_decision(payload)
    if not result.ok:
        log.warning("Quota notification for %s not delivered: %s", payload.get("emprendimiento"), result.error)
    return result


# ---------------------------------------------------------------------------
# Population, dashboard & KPIs
# ---------------------------------------------------------------------------

population_cache = PopulationCache()


def _population_record(emp: Entrepreneurship) -> dict[str, Any]:
    user = emp.user
    cupo = latest_quota(emp)
    return {
        "id": user.id,
        **{f: getattr(user, f) for f in USER_FIELDS},
        "roles": role_names(user),
        "emprendimiento": columns_dict(emp, exclude=("user_id",)),
        "equipo": columns_dict(emp.equipo),
        "financiamiento": columns_dict(emp.financiamiento),
        "cupo": quota_dict(cupo) if cupo else None,
        "evaluaciones": len(emp.evaluaciones),
    }


def load_population(session: Session) -> PopulationSnapshot:
    """Fetch the dataset the population filter runs over and publish it."""
    emps = session.execute(select(Entrepreneurship).order_by(Entrepreneurship.id)).scalars().all()
    beneficiary_user_ids = session.execute(
        select(UserRole.user_id).where(UserRole.role == BENEFICIARIO)
    ).scalars().all()
    approved = session.execute(
        select(QuotaAssignment.emprendimiento_id, QuotaAssignment.nivel)
        .where(QuotaAssignment.estado == APROBADO)
        .order_by(QuotaAssignment.id)
    ).all()
    scores = session.execute(select(Evaluation.emprendimiento_id, Evaluation.puntaje)).all()
    rows = [Row(id=emp.id, user_id=emp.user_id, data=_population_record(emp)) for emp in emps]
    return population_cache.publish(
        rows, beneficiary_user_ids, {emp_id: nivel for emp_id, nivel in approved}, build_score_index(scores),
    )


def dashboard_population(session: Session, refresh: bool = False) -> PopulationSnapshot:
    """Latest snapshot; only re-fetched on request or when none exists yet."""
    snap = population_cache.snapshot
    if refresh or snap is None:
        snap = load_population(session)
    return snap


def filtered_population(
    session: Session, filter_type: str = "todos", nivel_filter: str = "todos", refresh: bool = False,
) -> tuple[PopulationSnapshot, tuple[Row, ...]]:
    snap = dashboard_population(session, refresh)
    try:
        rows = population_cache.filter(filter_type, nivel_filter)
    except ValueError as exc:
        raise ValidationFailed(str(exc)) from exc
    return snap, rows


def level_distribution(snap: PopulationSnapshot, rows: Iterable[Row]) -> dict[str, int]:
    return dict(Counter(snap.nivel_of(r.id) for r in rows))


def compute_kpis(snap: PopulationSnapshot, rows: Iterable[Row]) -> dict[str, int]:
    rows = list(rows)
    beneficiarios = sum(1 for r in rows if r.user_id in snap.beneficiary_user_ids and r.id in snap.approved_ids)
    return {
        "total": len(rows),
        "candidatos": sum(1 for r in rows if r.id not in snap.approved_ids),
        "beneficiarios": beneficiarios,
        "total_evaluaciones": sum(r.data.get("evaluaciones") or 0 for r in rows),
    }


def list_candidates(
    session: Session, filter_type: str = "todos", nivel_filter: str = "todos",
    search: str | None = None, refresh: bool = False, operador_id: int | None = None,
) -> list[dict]:
    """Population rows flattened for the candidate list, optionally searched.

    With ``operador_id`` only the tiers that operator manages are listed.
    """
    snap, rows = filtered_population(session, filter_type, nivel_filter, refresh)
    niveles = set(operator_levels(session, operador_id)) if operador_id is not None else None
    items = []
    for r in rows:
        if niveles is not None and snap.nivel_of(r.id) not in niveles:
            continue
        item = dict(r.data)
        item["emprendimiento_id"] = r.id
        item["nivel"] = snap.nivel_of(r.id)
        item["es_beneficiario"] = r.user_id in snap.beneficiary_user_ids and r.id in snap.approved_ids
        items.append(item)
    if search:
        q = search.strip().lower()
        items = [
            i for i in items
            if q in (i.get("nombres") or "").lower()
            or q in (i.get("apellidos") or "").lower()
            or q in (i.get("email") or "").lower()
            or q in ((i.get("emprendimiento") or {}).get("nombre") or "").lower()
        ]
    return items


def _count_rows(section: str, chart: str, values: Iterable[Any], default: str = "Sin dato") -> list[ExportRow]:
    counts = Counter((v if v not in (None, "") else default) for v in values)
    return [ExportRow(section, chart, str(k), n) for k, n in counts.most_common()]


def dashboard_rows(snap: PopulationSnapshot, rows: Iterable[Row], today: date | None = None) -> list[ExportRow]:
    """Chart aggregates as flat (Seccion, Grafico, Categoria, Valor) rows."""
    today = today or date.today()
    rows = list(rows)
    if not rows:
        return [ExportRow("General", "Sin datos", "-", 0)]
    data = [r.data for r in rows]
    emps = [d.get("emprendimiento") or {} for d in data]
    teams = [d["equipo"] for d in data if d.get("equipo")]
    fins = [d["financiamiento"] for d in data if d.get("financiamiento")]

    out = [ExportRow("Usuarios", "Total Usuarios", "-", len({r.user_id for r in rows}))]
    out += [ExportRow("Usuarios", "Distribución por Nivel", k, v)
            for k, v in level_distribution(snap, rows).items()]
    ages = [a for a in (age_from_birth_year(d.get("ano_nacimiento"), today) for d in data) if a is not None]
    if ages:
        out.append(ExportRow("Usuarios", "Edad Promedio", "-", round(sum(ages) / len(ages), 1)))
    out += _count_rows("Usuarios", "Distribución de Género", (d.get("genero") for d in data))
    out += _count_rows("Usuarios", "Identificación Étnica", (d.get("identificacion_etnica") for d in data))
    out += _count_rows("Usuarios", "Distribución por Departamento", (d.get("departamento") for d in data))
    out += _count_rows("Usuarios", "Top 10 Municipios", (d.get("municipio") for d in data))[:10]

    for chart, key in (
        ("Estado Unidad Productiva", "estado_unidad_productiva"),
        ("Vertical (Industria)", "industria_vertical"),
        ("Categoría", "categoria"),
        ("Alcance de Mercado", "alcance_mercado"),
        ("Tipo de Cliente", "tipo_cliente"),
        ("Plan de Negocios", "plan_negocios"),
        ("Etapa", "etapa"),
        ("Nivel de Innovación", "nivel_innovacion"),
        ("Integración de Tecnología", "integracion_tecnologia"),
        ("Ventas Último Año", "ventas_ultimo_ano"),
    ):
        out += _count_rows("Emprendimientos", chart, (e.get(key) for e in emps))
    out += _count_rows("Emprendimientos", "Formalización", (yes_no(e.get("formalizacion")) for e in emps))

    if teams:
        n = len(teams)
        for chart, key in (
            ("Promedio Equipo Total", "equipo_total"),
            ("Promedio Full Time", "personas_full_time"),
            ("Promedio Colaboradoras", "colaboradoras"),
            ("Promedio Fundadoras", "fundadoras"),
            ("Promedio Jóvenes", "colaboradores_jovenes"),
        ):
            out.append(ExportRow("Equipos", chart, "-", round(sum(t.get(key) or 0 for t in teams) / n, 1)))
        out += _count_rows("Equipos", "Equipo Técnico", (yes_no(t.get("equipo_tecnico")) for t in teams))
        out += _count_rows("Equipos", "Organigrama", (t.get("organigrama") for t in teams))
        out += _count_rows("Equipos", "Tipo de Decisiones", (t.get("tipo_decisiones") for t in teams))

    if fins:
        previos = [f for f in fins if f.get("financiamiento_previo")]
        out.append(ExportRow("Financiamiento", "Con Financiamiento Previo", "-", len(previos)))
        out += _count_rows("Financiamiento", "Tipo de Actor (Financiamiento Previo)",
                           (f.get("tipo_actor") for f in previos))
        out += _count_rows("Financiamiento", "Busca Financiamiento", (f.get("busca_financiamiento") for f in fins))
    return out


def dashboard_export_rows(
    session: Session, filter_type: str = "todos", refresh: bool = False, today: date | None = None,
) -> dict[str, list[ExportRow]]:
    """Rows for each dashboard sheet; "General" uses every level."""
    snap = dashboard_population(session, refresh)
    out = {}
    for sheet in DASHBOARD_SHEETS:
        nivel_filter = "todos" if sheet == "General" else sheet
        _, rows = filtered_population(session, filter_type, nivel_filter)
        out[sheet] = dashboard_rows(snap, rows, today)
    return out


# ---------------------------------------------------------------------------
# Rankings & profile summary
# ---------------------------------------------------------------------------


def compute_rankings(session: Session, limit: int = RANKING_LIMIT) -> list[dict]:
    """Top entrepreneurships by average of CCC and submitted jury scores."""
    evals = session.execute(
        select(Evaluation).where(
            (Evaluation.tipo_evaluacion == CCC)
            | ((Evaluation.tipo_evaluacion == JURADO) & (Evaluation.estado == ENVIADA))
        )
    ).scalars().all()
    by_emp: dict[int, list[float]] = {}
    for ev in evals:
        if ev.puntaje is None:
            continue
        by_emp.setdefault(ev.emprendimiento_id, []).append(ev.puntaje)
    if not by_emp:
        return []
    emps = {
        e.id: e for e in session.execute(
            select(Entrepreneurship).where(Entrepreneurship.id.in_(by_emp))
        ).scalars().all()
    }
    ranked = []
    for emp_id, scores in by_emp.items():
        emp = emps.get(emp_id)
        if emp is None:
            continue
        ranked.append({
            "emprendimiento_id": emp_id,
            "nombre": emp.nombre,
            "beneficiario": f"{emp.user.nombres} {emp.user.apellidos}".strip(),
            "email": emp.user.email,
            "puntaje_promedio": average_score(scores),
            "evaluaciones_completadas": len(scores),
        })
    ranked.sort(key=lambda r: (-r["puntaje_promedio"], r["emprendimiento_id"]))
    ranked = ranked[:limit]
    for pos, r in enumerate(ranked, start=1):
        r["posicion"] = pos
    return ranked


def profile_summary(emp: Entrepreneurship) -> dict:
    """What the entrepreneur sees: average of visible submitted evaluations and the tier."""
    visible = [e for e in emp.evaluaciones if e.visible_para_usuario and e.estado == ENVIADA]
    approved = approved_quota(emp)
    diag = emp.diagnostico
    return {
        "emprendimiento_id": emp.id,
        "nombre": emp.nombre,
        "puntaje_promedio": average_score(e.puntaje for e in visible),
        "nivel": nivel_value(classify(approved.nivel if approved else None, (e.puntaje for e in emp.evaluaciones))),
        "es_beneficiario": is_beneficiary(emp),
        "cupo": quota_dict(approved) if approved else None,
        "evaluaciones": [evaluation_dict(e) for e in visible],
        "diagnostico": diag.contenido if diag is not None and diag.visible_para_usuario else None,
    }


# ---------------------------------------------------------------------------
# Lab: curriculum, attendance, tasks & submissions
# ---------------------------------------------------------------------------


def module_dict(m: Module, with_classes: bool = False) -> dict:
    d = {f: getattr(m, f) for f in ("id", *MODULE_FIELDS)}
    d["total_clases"] = len(m.clases)
    if with_classes:
        d["clases"] = [class_dict(c) for c in m.clases]
    return d


def class_dict(c: LabClass) -> dict:
    d = {f: getattr(c, f) for f in ("id", "modulo_id", *CLASS_FIELDS)}
    d["recursos_url"] = json_parse(c.recursos_json, [])
    return d


def create_module(session: Session, data: dict[str, Any]) -> Module:
    module = Module(titulo=data["titulo"])
    apply_updates(module, data, MODULE_FIELDS)
    session.add(module)
    session.flush()
    return module


def update_module(module: Module, updates: dict[str, Any]) -> Module:
    apply_updates(module, updates, MODULE_FIELDS)
    return module


def list_modules(session: Session, nivel: str | None = None, solo_activos: bool = False) -> list[Module]:
    query = select(Module).order_by(Module.orden, Module.id)
    if nivel:
        query = query.where(Module.nivel == nivel)
    if solo_activos:
        query = query.where(Module.activo.is_(True))
    return list(session.execute(query).scalars().all())


def create_class(session: Session, module: Module, data: dict[str, Any]) -> LabClass:
    clase = LabClass(titulo=data["titulo"], recursos_json=json.dumps(data.get("recursos_url") or []))
    apply_updates(clase, data, CLASS_FIELDS)
    module.clases.append(clase)
    session.flush()
    return clase


def update_class(clase: LabClass, updates: dict[str, Any]) -> LabClass:
    apply_updates(clase, updates, CLASS_FIELDS)
    if updates.get("recursos_url") is not None:
        clase.recursos_json = json.dumps(updates["recursos_url"])
    return clase


def delete_class(session: Session, clase: LabClass) -> None:
    clase.modulo.clases.remove(clase)
    session.delete(clase)
    session.flush()


_EMAIL_SPLIT = re.compile(r"[,;\n\r]+")


def parse_emails(raw: str) -> list[str]:
    """Lower-cased unique addresses from a comma, semicolon or newline separated list."""
    emails = (e.strip().lower() for e in _EMAIL_SPLIT.split(raw or ""))
    return list(dict.fromkeys(e for e in emails if "@" in e))


def register_attendance(session: Session, clase: LabClass, raw: str) -> dict[str, list[str]]:
    """Mark a class as completed for every listed learner (caller must commit)."""
    emails = parse_emails(raw)
    if not emails:
        raise ValidationFailed("No se encontraron correos válidos")
    users = {
        u.email.lower(): u for u in session.execute(
            select(User).where(func.lower(User.email).in_(emails))
        ).scalars().all()
    }
    progress = {p.user_id: p for p in clase.progreso}
    result: dict[str, list[str]] = {"registrados": [], "ya_registrados": [], "no_encontrados": []}
    for email in emails:
        user = users.get(email)
        if user is None:
            result["no_encontrados"].append(email)
            continue
        row = progress.get(user.id)
        if row is not None and row.completado:
            result["ya_registrados"].append(email)
            continue
        if row is None:
            row = ClassProgress(user_id=user.id)
            clase.progreso.append(row)
        row.completado = True
        row.progreso_porcentaje = 100
        row.ultima_actualizacion = datetime.now()
        result["registrados"].append(email)
    session.flush()
    log.info(
        "Attendance for class %d: %d new, %d repeated, %d unknown", clase.id,
        len(result["registrados"]), len(result["ya_registrados"]), len(result["no_encontrados"]),
    )
    return result


def class_attendees(session: Session, clase: LabClass) -> list[dict]:
    rows = session.execute(
        select(User, ClassProgress)
        .join(ClassProgress, ClassProgress.user_id == User.id)
        .where(ClassProgress.clase_id == clase.id, ClassProgress.completado.is_(True))
        .order_by(User.apellidos, User.nombres)
    ).all()
    return [
        {**user_summary(u), "fecha": isoformat(p.ultima_actualizacion)}
        for u, p in rows
    ]


def module_progress(session: Session, nivel: str | None = None) -> list[dict]:
    """Completed-class percentage of each beneficiary enrolled in a tier's modules."""
    out = []
    for module in list_modules(session, nivel):
        class_ids = [c.id for c in module.clases]
        students = session.execute(
            select(User)
            .join(Entrepreneurship, Entrepreneurship.user_id == User.id)
            .join(QuotaAssignment, QuotaAssignment.emprendimiento_id == Entrepreneurship.id)
            .where(QuotaAssignment.estado == APROBADO, QuotaAssignment.nivel == module.nivel)
            .order_by(User.id)
        ).scalars().all()
        done: Counter = Counter()
        if class_ids:
            done.update(session.execute(
                select(ClassProgress.user_id).where(
                    ClassProgress.clase_id.in_(class_ids), ClassProgress.completado.is_(True),
                )
            ).scalars().all())
        estudiantes = [
            {
                **user_summary(u),
                "clases_completadas": done[u.id],
                "progreso": round(done[u.id] / len(class_ids) * 100) if class_ids else 0,
            }
            for u in students
        ]
        out.append({
            "modulo_id": module.id,
            "titulo": module.titulo,
            "nivel": module.nivel,
            "total_clases": len(class_ids),
            "estudiantes": estudiantes,
            "progreso_promedio": (
                round(sum(e["progreso"] for e in estudiantes) / len(estudiantes)) if estudiantes else 0
            ),
        })
    return out


def create_task(session: Session, data: dict[str, Any]) -> Task:
    get_entity(session, Module, data["modulo_id"], "Module")
    task = Task(
        modulo_id=data["modulo_id"], titulo=data["titulo"], descripcion=data.get("descripcion") or "",
        fecha_limite=data["fecha_limite"], num_documentos=data.get("num_documentos") or 1,
        documentos_obligatorios=bool(data.get("documentos_obligatorios")),
    )
    session.add(task)
    session.flush()
    return task


def submit_task(
    session: Session, task: Task, user_id: int, archivos: list[dict[str, str]],
    comentario: str = "", now: datetime | None = None,
) -> Submission:
    """Create or replace a learner's submission while the task is open (caller must commit)."""
    now = now or datetime.now()
    if task.fecha_limite is not None and now > task.fecha_limite:
        raise SubmissionClosed("La fecha límite de esta tarea ya pasó")
    if not archivos:
        raise ValidationFailed("Debes adjuntar al menos un archivo")
    if task.documentos_obligatorios and len(archivos) > task.num_documentos:
        raise ValidationFailed(f"Solo puedes subir máximo {task.num_documentos} archivo(s)")
    get_entity(session, User, user_id, "User")

    sub = session.execute(
        select(Submission).where(Submission.tarea_id == task.id, Submission.user_id == user_id)
    ).scalars().first()
    if sub is None:
        sub = Submission(tarea_id=task.id, user_id=user_id)
        session.add(sub)
    sub.archivos_json = json.dumps(archivos)
    sub.comentario = comentario or ""
    sub.estado = "entregado"
    sub.fecha_entrega = now
    session.flush()
    return sub


def grade_submission(sub: Submission, estado: str, feedback: str | None = None, nota: float | None = None) -> Submission:
    if estado not in SUBMISSION_STATES:
        raise ValidationFailed(f"Estado inválido: {estado}")
    sub.estado = estado
    if feedback is not None:
        sub.feedback = feedback
    if nota is not None:
        sub.nota = nota
    return sub


def list_submissions(session: Session, task_id: int, estado: str | None = None) -> list[Submission]:
    query = select(Submission).where(Submission.tarea_id == task_id).order_by(Submission.fecha_entrega.desc())
    if estado:
        query = query.where(Submission.estado == estado)
    return list(session.execute(query).scalars().all())


def pending_tasks(session: Session, user_id: int, now: datetime | None = None) -> list[Task]:
    """Open tasks the learner has not submitted yet, nearest deadline first."""
    now = now or datetime.now()
    submitted = select(Submission.tarea_id).where(Submission.user_id == user_id)
    return list(session.execute(
        select(Task)
        .where(Task.fecha_limite >= now, Task.id.not_in(submitted))
        .order_by(Task.fecha_limite)
    ).scalars().all())


# ---------------------------------------------------------------------------
# Advisory sessions
# ---------------------------------------------------------------------------


def create_advisory_profile(session: Session, data: dict[str, Any]) -> AdvisoryProfile:
    mentor = _require_mentor(session, data["mentor_id"])
    profile = AdvisoryProfile(
        mentor_id=mentor.id, titulo=data["titulo"], descripcion=data.get("descripcion") or "",
        duracion_minutos=data.get("duracion_minutos") or 60,
        link_calendario_externo=data.get("link_calendario_externo") or "",
    )
    session.add(profile)
    session.flush()
    return profile


def add_availability(session: Session, data: dict[str, Any]) -> MentorAvailability:
    _require_mentor(session, data["mentor_id"])
    if data["hora_fin"] <= data["hora_inicio"]:
        raise ValidationFailed("La hora de fin debe ser posterior a la de inicio")
    slot = MentorAvailability(
        mentor_id=data["mentor_id"], dia_semana=data["dia_semana"],
        hora_inicio=data["hora_inicio"], hora_fin=data["hora_fin"],
    )
    session.add(slot)
    session.flush()
    return slot


def delete_availability(session: Session, slot: MentorAvailability) -> None:
    session.delete(slot)
    session.flush()


def list_availability(session: Session, mentor_id: int) -> list[MentorAvailability]:
    return list(session.execute(
        select(MentorAvailability)
        .where(MentorAvailability.mentor_id == mentor_id)
        .order_by(MentorAvailability.dia_semana, MentorAvailability.hora_inicio)
    ).scalars().all())


def availability_dict(slot: MentorAvailability) -> dict:
    return {
        "id": slot.id, "mentor_id": slot.mentor_id, "dia_semana": slot.dia_semana,
        "hora_inicio": slot.hora_inicio, "hora_fin": slot.hora_fin,
    }


def book_advisory(
    session: Session, profile: AdvisoryProfile, beneficiario_id: int, inicio: datetime,
    fin: datetime | None = None, tipo_reserva: str = "normal",
) -> tuple[Booking, dict[str, str]]:
    """Store a pending booking and build its webhook payload (caller must commit)."""
    if not profile.activo:
        raise ValidationFailed("Esta asesoría no está disponible")
    get_entity(session, User, beneficiario_id, "Beneficiario")
    fin = fin or inicio + timedelta(minutes=profile.duracion_minutos or 60)
    booking = Booking(
        perfil_asesoria_id=profile.id, beneficiario_id=beneficiario_id,
        mentor_id=profile.mentor_id, fecha_reserva=inicio,
        estado="pendiente", tipo_reserva=tipo_reserva,
    )
    session.add(booking)
    session.flush()
    payload = notifier.booking_payload(
        beneficiario_id=beneficiario_id, mentor_id=profile.mentor_id, perfil_id=profile.id,
        reserva_id=booking.id, inicio=inicio, fin=fin, titulo=profile.titulo,
    )
    return booking, payload


async def notify_booking(payload: dict[str, str]) -> notifier.NotificationResult:
    result = await notifier.notify_booking(payload)
    if not result.ok:
        log.warning("Booking notification %s not delivered: %s", payload.get("id_reserva"), result.error)
    return result
