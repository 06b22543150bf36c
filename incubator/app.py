from __future__ import annotations

import logging
import unicodedata
from contextlib import asynccontextmanager
from datetime import date
from typing import Generator
from urllib.parse import quote

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from incubator import exporter, services
from incubator.db import init_db, session_generator
from incubator.models import (
    AdvisoryProfile,
    Entrepreneurship,
    Evaluation,
    LabClass,
    MentorAssignment,
    MentorAvailability,
    Module,
    QuotaAssignment,
    Submission,
    Task,
    User,
)
from incubator.population import FILTER_TYPES, NIVEL_FILTERS
from incubator.schemas import (
    AdvisoryProfileCreate,
    AssignmentIn,
    AssignmentOut,
    AttendanceIn,
    AuthorizationIn,
    AvailabilityIn,
    BookingIn,
    BookingOut,
    CandidateExportIn,
    ClassCreate,
    ClassUpdate,
    DiagnosticIn,
    EntrepreneurshipCreate,
    EntrepreneurshipOut,
    EntrepreneurshipUpdate,
    EvaluationIn,
    EvaluationOut,
    FinancingIn,
    GradeIn,
    GuardianIn,
    ModuleCreate,
    ModuleUpdate,
    OperatorAssignIn,
    ProjectionIn,
    QuotaDecisionIn,
    QuotaOut,
    ScorePreviewIn,
    SubmissionIn,
    SubmissionOut,
    TaskCreate,
    UserCreate,
    UserOut,
    VisibilityUpdate,
)
from incubator.scoring import ComponentScores, aggregate, nivel_from_score, nivel_value

log = logging.getLogger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Incubator",
    version="0.1.0",
    description=(
        "Administration API for an entrepreneurship-incubation program: "
        "evaluations, quota assignment, dashboards, lab tasks and advisory bookings. "
        "All endpoints return JSON except exports. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Users", "description": "Register users and their roles."},
        {"name": "Entrepreneurships", "description": "Venture profiles, teams and candidate details."},
        {"name": "Evaluations", "description": "CCC and jury evaluations, visibility and comparison."},
        {"name": "Quotas", "description": "Approve, reject or revert program quotas per tier and cohort."},
        {"name": "Assignments", "description": "Mentor and juror assignments."},
        {"name": "Dashboard", "description": "Population filter, KPIs, level distribution and rankings."},
        {"name": "Export", "description": "Spreadsheet and CSV downloads."},
        {"name": "Operators", "description": "Mentors operating one or more tiers."},
        {"name": "Lab", "description": "Modules, classes, attendance, tasks and learner submissions."},
        {"name": "Advisory", "description": "Mentor advisory profiles, weekly availability and bookings."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


_ERROR_STATUS: dict[type[services.IncubatorError], int] = {
    services.NotFound: 404,
    services.ValidationFailed: 422,
}


def _http_error(exc: services.IncubatorError) -> HTTPException:
    """404 for missing entities, 422 for invalid input, 409 for state conflicts."""
    status = next((code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 409)
    return HTTPException(status, str(exc))


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    try:
        return services.get_entity(session, model, entity_id, label)
    except services.NotFound as exc:
        raise HTTPException(404, str(exc)) from exc


def _check_facets(filter_type: str, nivel_filter: str) -> None:
    if filter_type not in FILTER_TYPES:
        raise HTTPException(422, f"filter_type must be one of: {', '.join(FILTER_TYPES)}")
    if nivel_filter not in NIVEL_FILTERS:
        raise HTTPException(422, f"nivel_filter must be one of: {', '.join(NIVEL_FILTERS)}")


def _attachment(content: bytes | str, filename: str, media_type: str) -> Response:
    """Download response; non-ASCII names go in ``filename*`` with an ASCII fallback."""
    fallback = unicodedata.normalize("NFKD", filename).encode("ascii", "ignore").decode("ascii")
    fallback = fallback.replace('"', "").replace("\\", "") or "export"
    disposition = f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"
    return Response(content=content, media_type=media_type, headers={"Content-Disposition": disposition})


# ---------------------------------------------------------------------------
# Routes: Users
# ---------------------------------------------------------------------------


@app.post("/api/users", response_model=UserOut, status_code=201,
          tags=["Users"], summary="Create a user with roles")
async def create_user(body: UserCreate, session: Session = Depends(db_session)):
    user = services.create_user(session, body.model_dump())
    session.commit()
    services.population_cache.clear()
    return services.user_summary(user)


@app.get("/api/users/{user_id}", response_model=UserOut, tags=["Users"], summary="Get a user")
async def get_user(user_id: int, session: Session = Depends(db_session)):
    return services.user_summary(_get_or_404(session, User, user_id, "User"))


@app.put("/api/users/{user_id}/authorizations", tags=["Users"],
         summary="Record data-processing and contact consents (partial update)")
async def set_authorizations(user_id: int, body: AuthorizationIn, session: Session = Depends(db_session)):
    user = _get_or_404(session, User, user_id, "User")
    auth = services.set_authorizations(user, body.model_dump())
    session.commit()
    return services.columns_dict(auth, exclude=("id", "user_id"))


@app.put("/api/users/{user_id}/guardian", tags=["Users"], summary="Register the guardian of an underage user")
async def save_guardian(user_id: int, body: GuardianIn, session: Session = Depends(db_session)):
    user = _get_or_404(session, User, user_id, "User")
    try:
        guardian = services.save_guardian(user, body.model_dump())
    except services.IncubatorError as exc:
        raise _http_error(exc) from exc
    session.commit()
    return services.columns_dict(guardian, exclude=("id", "menor_id"))


# ---------------------------------------------------------------------------
# Routes: Entrepreneurships
# ---------------------------------------------------------------------------


@app.post("/api/entrepreneurships", response_model=EntrepreneurshipOut, status_code=201,
          tags=["Entrepreneurships"], summary="Register a venture profile for a user")
async def create_entrepreneurship(body: EntrepreneurshipCreate, session: Session = Depends(db_session)):
    try:
        emp = services.create_entrepreneurship(session, body.model_dump())
    except services.IncubatorError as exc:
        raise _http_error(exc) from exc
    session.commit()
    services.population_cache.clear()
    return services.entrepreneurship_summary(emp)


@app.get("/api/entrepreneurships/{emp_id}", response_model=EntrepreneurshipOut,
         tags=["Entrepreneurships"], summary="Get an entrepreneurship with its effective level")
async def get_entrepreneurship(emp_id: int, session: Session = Depends(db_session)):
    return services.entrepreneurship_summary(_get_or_404(session, Entrepreneurship, emp_id, "Entrepreneurship"))


@app.put("/api/entrepreneurships/{emp_id}", response_model=EntrepreneurshipOut,
         tags=["Entrepreneurships"], summary="Update entrepreneurship fields (partial update, null fields ignored)")
async def update_entrepreneurship(emp_id: int, body: EntrepreneurshipUpdate, session: Session = Depends(db_session)):
    emp = _get_or_404(session, Entrepreneurship, emp_id, "Entrepreneurship")
    services.update_entrepreneurship(emp, body.model_dump())
    session.commit()
    services.population_cache.clear()
    return services.entrepreneurship_summary(emp)


@app.put("/api/entrepreneurships/{emp_id}/financing", tags=["Entrepreneurships"],
         summary="Create or update the financing section (partial update)")
async def save_financing(emp_id: int, body: FinancingIn, session: Session = Depends(db_session)):
    emp = _get_or_404(session, Entrepreneurship, emp_id, "Entrepreneurship")
    fin = services.save_financing(emp, body.model_dump())
    session.commit()
    services.population_cache.clear()
    return services.columns_dict(fin)


@app.put("/api/entrepreneurships/{emp_id}/projections", tags=["Entrepreneurships"],
         summary="Create or update the growth projections section (partial update)")
async def save_projection(emp_id: int, body: ProjectionIn, session: Session = Depends(db_session)):
    emp = _get_or_404(session, Entrepreneurship, emp_id, "Entrepreneurship")
    proj = services.save_projection(emp, body.model_dump())
    session.commit()
    return services.columns_dict(proj)


@app.put("/api/entrepreneurships/{emp_id}/diagnostic", tags=["Entrepreneurships"],
         summary="Write the staff diagnostic and choose whether the entrepreneur sees it")
async def save_diagnostic(emp_id: int, body: DiagnosticIn, session: Session = Depends(db_session)):
    emp = _get_or_404(session, Entrepreneurship, emp_id, "Entrepreneurship")
    try:
        diag = services.save_diagnostic(emp, body.contenido, body.visible_para_usuario)
    except services.IncubatorError as exc:
        raise _http_error(exc) from exc
    session.commit()
    return services.columns_dict(diag)


@app.get("/api/entrepreneurships/{emp_id}/summary",
         tags=["Entrepreneurships"], summary="Entrepreneur-facing score summary (average of visible evaluations)")
async def get_profile_summary(emp_id: int, session: Session = Depends(db_session)):
    return services.profile_summary(_get_or_404(session, Entrepreneurship, emp_id, "Entrepreneurship"))


@app.get("/api/candidates", tags=["Entrepreneurships"],
         summary="List candidates and beneficiaries through the population filter")
async def list_candidates(
    filter_type: str = Query("todos", description="todos, beneficiarios or candidatos"),
    nivel_filter: str = Query("todos", description="todos, Starter, Growth, Scale or candidatos"),
    search: str | None = Query(None, description="Free-text search across names, email and venture name"),
    refresh: bool = Query(False, description="Re-fetch the population before filtering"),
    operador_id: int | None = Query(None, description="Only the tiers managed by this operator"),
    session: Session = Depends(db_session),
):
    _check_facets(filter_type, nivel_filter)
    items = services.list_candidates(session, filter_type, nivel_filter, search, refresh, operador_id)
    return {"items": items, "total": len(items)}


@app.get("/api/candidates/{user_id}", tags=["Entrepreneurships"],
         summary="Full candidate detail (profile, venture, team, financing, evaluations, quota)")
async def get_candidate(user_id: int, session: Session = Depends(db_session)):
    return services.candidate_detail(_get_or_404(session, User, user_id, "User"))


# ---------------------------------------------------------------------------
# Routes: Evaluations
# ---------------------------------------------------------------------------


@app.post("/api/score-preview", tags=["Evaluations"], summary="Total, per-category subtotals and level for raw scores")
async def score_preview(body: ScorePreviewIn):
    breakdown = aggregate(ComponentScores(
        impacto=body.puntaje_impacto, equipo=body.puntaje_equipo,
        innovacion_tecnologia=body.puntaje_innovacion_tecnologia, ventas=body.puntaje_ventas,
        proyeccion_financiacion=body.puntaje_proyeccion_financiacion,
        referido_regional=body.puntaje_referido_regional,
    ))
    return {
        "total": breakdown.total, "max_total": breakdown.max_total, "porcentaje": breakdown.porcentaje,
        "categorias": [vars(c) for c in breakdown.categorias],
        "nivel": nivel_value(nivel_from_score(breakdown.total)),
    }


@app.get("/api/evaluations", response_model=list[EvaluationOut],
         tags=["Evaluations"], summary="List evaluations, newest first")
async def list_evaluations(
    emprendimiento_id: int | None = Query(None),
    tipo: str | None = Query(None, description="ccc or jurado"),
    estado: str | None = Query(None, description="borrador or enviada"),
    mentor_id: int | None = Query(None),
    session: Session = Depends(db_session),
):
    evals = services.list_evaluations(
        session, emprendimiento_id=emprendimiento_id, tipo=tipo, estado=estado, mentor_id=mentor_id,
    )
    return [services.evaluation_dict(e) for e in evals]


@app.put("/api/entrepreneurships/{emp_id}/evaluations/ccc", response_model=EvaluationOut,
         tags=["Evaluations"], summary="Create or update the CCC evaluation")
async def save_ccc_evaluation(emp_id: int, body: EvaluationIn, session: Session = Depends(db_session)):
    emp = _get_or_404(session, Entrepreneurship, emp_id, "Entrepreneurship")
    try:
        ev = services.save_ccc_evaluation(session, emp, body.mentor_id, body.model_dump())
    except services.IncubatorError as exc:
        raise _http_error(exc) from exc
    session.commit()
    services.population_cache.clear()
    return services.evaluation_dict(ev)


@app.put("/api/entrepreneurships/{emp_id}/evaluations/jurado", response_model=EvaluationOut,
         tags=["Evaluations"], summary="Create or update the calling juror's evaluation")
async def save_jury_evaluation(emp_id: int, body: EvaluationIn, session: Session = Depends(db_session)):
    emp = _get_or_404(session, Entrepreneurship, emp_id, "Entrepreneurship")
    try:
        ev = services.save_jury_evaluation(session, emp, body.mentor_id, body.model_dump())
    except services.IncubatorError as exc:
        raise _http_error(exc) from exc
    session.commit()
    services.population_cache.clear()
    return services.evaluation_dict(ev)


@app.put("/api/evaluations/{evaluation_id}/visibility", response_model=EvaluationOut,
         tags=["Evaluations"], summary="Show or hide an evaluation to the entrepreneur")
async def set_visibility(evaluation_id: int, body: VisibilityUpdate, session: Session = Depends(db_session)):
    ev = _get_or_404(session, Evaluation, evaluation_id, "Evaluation")
    services.set_evaluation_visibility(ev, body.visible)
    session.commit()
    return services.evaluation_dict(ev)


@app.get("/api/entrepreneurships/{emp_id}/evaluations/comparison",
         tags=["Evaluations"], summary="CCC vs submitted jury evaluations per component")
async def compare_evaluations(emp_id: int, session: Session = Depends(db_session)):
    return services.compare_evaluations(_get_or_404(session, Entrepreneurship, emp_id, "Entrepreneurship"))


# ---------------------------------------------------------------------------
# Routes: Assignments
# ---------------------------------------------------------------------------


@app.post("/api/assignments", response_model=AssignmentOut, status_code=201,
          tags=["Assignments"], summary="Assign a mentor or juror to an entrepreneurship")
async def create_assignment(body: AssignmentIn, session: Session = Depends(db_session)):
    try:
        a = services.assign_mentor(session, body.mentor_id, body.emprendimiento_id, body.es_jurado)
    except services.IncubatorError as exc:
        raise _http_error(exc) from exc
    session.commit()
    return services.assignment_dict(a)


@app.get("/api/assignments", response_model=list[AssignmentOut],
         tags=["Assignments"], summary="List active assignments")
async def list_assignments(
    mentor_id: int | None = Query(None),
    emprendimiento_id: int | None = Query(None),
    es_jurado: bool | None = Query(None),
    include_inactive: bool = Query(False),
    session: Session = Depends(db_session),
):
    items = services.list_assignments(
        session, mentor_id=mentor_id, emprendimiento_id=emprendimiento_id,
        es_jurado=es_jurado, include_inactive=include_inactive,
    )
    return [services.assignment_dict(a) for a in items]


@app.delete("/api/assignments/{assignment_id}", response_model=AssignmentOut,
            tags=["Assignments"], summary="Deactivate an assignment")
async def deactivate_assignment(assignment_id: int, session: Session = Depends(db_session)):
    a = _get_or_404(session, MentorAssignment, assignment_id, "Assignment")
    services.deactivate_assignment(a)
    session.commit()
    return services.assignment_dict(a)


# ---------------------------------------------------------------------------
# Routes: Quotas
# ---------------------------------------------------------------------------


@app.get("/api/quotas/usage", tags=["Quotas"], summary="Approved quotas per tier and cohort against capacity")
async def quota_usage(session: Session = Depends(db_session)):
    return services.quota_usage(session)


@app.get("/api/quotas/candidates/{nivel}", tags=["Quotas"],
         summary="Candidates whose best score maps to a tier, with jury progress")
async def quota_candidates(nivel: str, session: Session = Depends(db_session)):
    if nivel not in services.QUOTA_LIMITS:
        raise HTTPException(422, f"nivel must be one of: {', '.join(services.QUOTA_LIMITS)}")
    return services.quota_candidates(session, nivel)


async def _decide_quota(body: QuotaDecisionIn, session: Session, decide) -> dict:
    emp = _get_or_404(session, Entrepreneurship, body.emprendimiento_id, "Entrepreneurship")
    try:
        row = decide(session, emp, body.nivel, body.cohorte, body.admin_id, body.notas)
    except services.IncubatorError as exc:
        raise _http_error(exc) from exc
    session.commit()
    services.population_cache.clear()
    result = await services.notify_quota(services.quota_payload(emp, row))
    return {**services.quota_dict(row), "notificacion_enviada": result.ok and not result.skipped}


@app.post("/api/quotas/approve", response_model=QuotaOut, tags=["Quotas"],
          summary="Approve a quota (checks capacity and pending jury evaluations)")
async def approve_quota(body: QuotaDecisionIn, session: Session = Depends(db_session)):
    return await _decide_quota(body, session, services.approve_quota)


@app.post("/api/quotas/reject", response_model=QuotaOut, tags=["Quotas"], summary="Reject a quota")
async def reject_quota(body: QuotaDecisionIn, session: Session = Depends(db_session)):
    return await _decide_quota(body, session, services.reject_quota)


@app.delete("/api/quotas/{quota_id}", tags=["Quotas"], summary="Revert a quota decision")
async def revert_quota(quota_id: int, session: Session = Depends(db_session)):
    row = _get_or_404(session, QuotaAssignment, quota_id, "Quota")
    services.revert_quota(session, row)
    session.commit()
    services.population_cache.clear()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Operators
# ---------------------------------------------------------------------------


@app.post("/api/operators", status_code=201, tags=["Operators"], summary="Make a mentor operator of one or more tiers")
async def assign_operator(body: OperatorAssignIn, session: Session = Depends(db_session)):
    try:
        services.assign_operator(session, body.mentor_id, body.niveles)
    except services.IncubatorError as exc:
        raise _http_error(exc) from exc
    session.commit()
    return {"mentor_id": body.mentor_id, "niveles": services.operator_levels(session, body.mentor_id)}


@app.get("/api/operators", tags=["Operators"], summary="Active operators and their tiers")
async def list_operators(session: Session = Depends(db_session)):
    return services.list_operators(session)


@app.get("/api/operators/{mentor_id}", tags=["Operators"], summary="Tiers an operator manages")
async def get_operator(mentor_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, User, mentor_id, "Mentor")
    return {"mentor_id": mentor_id, "niveles": services.operator_levels(session, mentor_id)}


@app.delete("/api/operators/{mentor_id}", tags=["Operators"], summary="Stop a mentor operating one tier or all")
async def remove_operator(
    mentor_id: int, nivel: str | None = Query(None), session: Session = Depends(db_session),
):
    try:
        services.remove_operator(session, mentor_id, nivel)
    except services.IncubatorError as exc:
        raise _http_error(exc) from exc
    session.commit()
    return {"mentor_id": mentor_id, "niveles": services.operator_levels(session, mentor_id)}


# ---------------------------------------------------------------------------
# Routes: Dashboard
# ---------------------------------------------------------------------------


class DashboardResponse(BaseModel):
    kpis: dict[str, int]
    distribucion_nivel: dict[str, int]
    revision: int


@app.get("/api/dashboard", response_model=DashboardResponse,
         tags=["Dashboard"], summary="KPIs and level distribution for a population selection")
async def dashboard(
    filter_type: str = Query("todos"),
    nivel_filter: str = Query("todos"),
    refresh: bool = Query(False, description="Re-fetch the population before filtering"),
    session: Session = Depends(db_session),
):
    _check_facets(filter_type, nivel_filter)
    snap, rows = services.filtered_population(session, filter_type, nivel_filter, refresh)
    return {
        "kpis": services.compute_kpis(snap, rows),
        "distribucion_nivel": services.level_distribution(snap, rows),
        "revision": snap.revision,
    }


@app.get("/api/rankings", tags=["Dashboard"], summary="Top 100 by average evaluation score")
async def rankings(session: Session = Depends(db_session)):
    return services.compute_rankings(session)


# ---------------------------------------------------------------------------
# Routes: Export
# ---------------------------------------------------------------------------


@app.post("/api/export/candidates/{user_id}", tags=["Export"], summary="Export one candidate to .xlsx")
async def export_candidate(user_id: int, body: CandidateExportIn, session: Session = Depends(db_session)):
    detail = services.candidate_detail(_get_or_404(session, User, user_id, "User"))
    content = exporter.candidate_export(detail, body.sections)
    return _attachment(content, exporter.candidate_filename(detail), XLSX_MEDIA_TYPE)


@app.get("/api/export/candidates", tags=["Export"], summary="Export the filtered candidate list to .xlsx")
async def export_candidates(
    filter_type: str = Query("todos"),
    nivel_filter: str = Query("todos"),
    search: str | None = Query(None),
    refresh: bool = Query(False),
    operador_id: int | None = Query(None),
    session: Session = Depends(db_session),
):
    _check_facets(filter_type, nivel_filter)
    items = services.list_candidates(session, filter_type, nivel_filter, search, refresh, operador_id)
    return _attachment(
        exporter.candidate_list_export(items), f"candidatos_{date.today().isoformat()}.xlsx", XLSX_MEDIA_TYPE,
    )


@app.get("/api/export/dashboard", tags=["Export"], summary="Export dashboard aggregates, one sheet per level")
async def export_dashboard(
    filter_type: str = Query("todos"),
    refresh: bool = Query(False),
    session: Session = Depends(db_session),
):
    _check_facets(filter_type, "todos")
    rows = services.dashboard_export_rows(session, filter_type, refresh)
    return _attachment(
        exporter.dashboard_export(rows), f"dashboard_{filter_type}_{date.today().isoformat()}.xlsx", XLSX_MEDIA_TYPE,
    )


@app.get("/api/export/rankings", tags=["Export"], summary="Export the top 100 ranking as CSV")
async def export_rankings(session: Session = Depends(db_session)):
    csv_text = exporter.rankings_csv(services.compute_rankings(session))
    return _attachment(csv_text, f"top100_{date.today().isoformat()}.csv", "text/csv; charset=utf-8")


@app.get("/api/export/quotas/{nivel}", tags=["Export"],
         summary="Export a tier's evaluated entrepreneurships with their quota state to .xlsx")
async def export_quota_level(
    nivel: str,
    estado: str | None = Query(None, description="pendiente, aprobado or rechazado"),
    session: Session = Depends(db_session),
):
    try:
        rows = services.quota_level_rows(session, nivel, estado)
    except services.IncubatorError as exc:
        raise _http_error(exc) from exc
    content = exporter.quota_level_export(rows, nivel, estado, services.has_cohorts(nivel))
    return _attachment(content, exporter.quota_level_filename(nivel, estado), XLSX_MEDIA_TYPE)


# ---------------------------------------------------------------------------
# Routes: Lab
# ---------------------------------------------------------------------------


def _task_dict(t: Task) -> dict:
    return {
        "id": t.id, "modulo_id": t.modulo_id, "titulo": t.titulo, "descripcion": t.descripcion,
        "fecha_limite": t.fecha_limite.isoformat(), "num_documentos": t.num_documentos,
        "documentos_obligatorios": t.documentos_obligatorios,
    }


@app.post("/api/modules", status_code=201, tags=["Lab"], summary="Create a curriculum module for a tier")
async def create_module(body: ModuleCreate, session: Session = Depends(db_session)):
    module = services.create_module(session, body.model_dump())
    session.commit()
    return services.module_dict(module)


@app.get("/api/modules", tags=["Lab"], summary="List modules in curriculum order")
async def list_modules(
    nivel: str | None = Query(None, description="Starter, Growth or Scale"),
    solo_activos: bool = Query(False),
    session: Session = Depends(db_session),
):
    return [services.module_dict(m) for m in services.list_modules(session, nivel, solo_activos)]


@app.get("/api/modules/progress", tags=["Lab"], summary="Per-module class completion of each enrolled beneficiary")
async def module_progress(nivel: str | None = Query(None), session: Session = Depends(db_session)):
    return services.module_progress(session, nivel)


@app.get("/api/modules/{module_id}", tags=["Lab"], summary="A module with its classes")
async def get_module(module_id: int, session: Session = Depends(db_session)):
    return services.module_dict(_get_or_404(session, Module, module_id, "Module"), with_classes=True)


@app.put("/api/modules/{module_id}", tags=["Lab"], summary="Update a module (partial update)")
async def update_module(module_id: int, body: ModuleUpdate, session: Session = Depends(db_session)):
    module = _get_or_404(session, Module, module_id, "Module")
    services.update_module(module, body.model_dump())
    session.commit()
    return services.module_dict(module)


@app.post("/api/modules/{module_id}/classes", status_code=201, tags=["Lab"], summary="Add a class to a module")
async def create_class(module_id: int, body: ClassCreate, session: Session = Depends(db_session)):
    module = _get_or_404(session, Module, module_id, "Module")
    clase = services.create_class(session, module, body.model_dump())
    session.commit()
    return services.class_dict(clase)


@app.put("/api/classes/{class_id}", tags=["Lab"], summary="Update a class (partial update)")
async def update_class(class_id: int, body: ClassUpdate, session: Session = Depends(db_session)):
    clase = _get_or_404(session, LabClass, class_id, "Class")
    services.update_class(clase, body.model_dump())
    session.commit()
    return services.class_dict(clase)


@app.delete("/api/classes/{class_id}", tags=["Lab"], summary="Delete a class and its attendance")
async def delete_class(class_id: int, session: Session = Depends(db_session)):
    services.delete_class(session, _get_or_404(session, LabClass, class_id, "Class"))
    session.commit()
    return {"ok": True}


@app.post("/api/classes/{class_id}/attendance", tags=["Lab"],
          summary="Mark a class completed for a pasted list of learner emails")
async def register_attendance(class_id: int, body: AttendanceIn, session: Session = Depends(db_session)):
    clase = _get_or_404(session, LabClass, class_id, "Class")
    try:
        result = services.register_attendance(session, clase, body.emails)
    except services.IncubatorError as exc:
        raise _http_error(exc) from exc
    session.commit()
    return result


@app.get("/api/classes/{class_id}/attendance", tags=["Lab"], summary="Learners who completed a class")
async def class_attendees(class_id: int, session: Session = Depends(db_session)):
    return services.class_attendees(session, _get_or_404(session, LabClass, class_id, "Class"))


@app.post("/api/tasks", status_code=201, tags=["Lab"], summary="Create a task in a module")
async def create_task(body: TaskCreate, session: Session = Depends(db_session)):
    try:
        task = services.create_task(session, body.model_dump())
    except services.IncubatorError as exc:
        raise _http_error(exc) from exc
    session.commit()
    return _task_dict(task)


@app.get("/api/users/{user_id}/pending-tasks", tags=["Lab"], summary="Open tasks not yet submitted by a learner")
async def pending_tasks(user_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, User, user_id, "User")
    return [_task_dict(t) for t in services.pending_tasks(session, user_id)]


@app.post("/api/tasks/{task_id}/submissions", response_model=SubmissionOut,
          tags=["Lab"], summary="Submit or resubmit files for a task before its deadline")
async def submit_task(task_id: int, body: SubmissionIn, session: Session = Depends(db_session)):
    task = _get_or_404(session, Task, task_id, "Task")
    try:
        sub = services.submit_task(
            session, task, body.user_id, [f.model_dump() for f in body.archivos], body.comentario,
        )
    except services.IncubatorError as exc:
        raise _http_error(exc) from exc
    session.commit()
    return services.submission_dict(sub)


@app.get("/api/tasks/{task_id}/submissions", response_model=list[SubmissionOut],
         tags=["Lab"], summary="List submissions for a task")
async def list_submissions(task_id: int, estado: str | None = Query(None), session: Session = Depends(db_session)):
    _get_or_404(session, Task, task_id, "Task")
    return [services.submission_dict(s) for s in services.list_submissions(session, task_id, estado)]


@app.put("/api/submissions/{submission_id}/grade", response_model=SubmissionOut,
         tags=["Lab"], summary="Grade a submission with feedback")
async def grade_submission(submission_id: int, body: GradeIn, session: Session = Depends(db_session)):
    sub = _get_or_404(session, Submission, submission_id, "Submission")
    services.grade_submission(sub, body.estado, body.feedback, body.nota)
    session.commit()
    return services.submission_dict(sub)


# ---------------------------------------------------------------------------
# Routes: Advisory
# ---------------------------------------------------------------------------


@app.post("/api/advisory-profiles", status_code=201, tags=["Advisory"], summary="Publish a mentor advisory profile")
async def create_advisory_profile(body: AdvisoryProfileCreate, session: Session = Depends(db_session)):
    try:
        profile = services.create_advisory_profile(session, body.model_dump())
    except services.IncubatorError as exc:
        raise _http_error(exc) from exc
    session.commit()
    return {
        "id": profile.id, "mentor_id": profile.mentor_id, "titulo": profile.titulo,
        "duracion_minutos": profile.duracion_minutos, "activo": profile.activo,
    }


@app.post("/api/availability", status_code=201, tags=["Advisory"], summary="Add a weekly availability slot for a mentor")
async def add_availability(body: AvailabilityIn, session: Session = Depends(db_session)):
    try:
        slot = services.add_availability(session, body.model_dump())
    except services.IncubatorError as exc:
        raise _http_error(exc) from exc
    session.commit()
    return services.availability_dict(slot)


@app.get("/api/availability", tags=["Advisory"], summary="A mentor's weekly slots, by day then start time")
async def list_availability(mentor_id: int = Query(...), session: Session = Depends(db_session)):
    return [services.availability_dict(s) for s in services.list_availability(session, mentor_id)]


@app.delete("/api/availability/{slot_id}", tags=["Advisory"], summary="Remove an availability slot")
async def delete_availability(slot_id: int, session: Session = Depends(db_session)):
    services.delete_availability(session, _get_or_404(session, MentorAvailability, slot_id, "Availability"))
    session.commit()
    return {"ok": True}


@app.post("/api/advisory-profiles/{profile_id}/bookings", response_model=BookingOut, status_code=201,
          tags=["Advisory"], summary="Book an advisory session and notify the automation webhook")
async def book_advisory(profile_id: int, body: BookingIn, session: Session = Depends(db_session)):
    profile = _get_or_404(session, AdvisoryProfile, profile_id, "Advisory profile")
    try:
        booking, payload = services.book_advisory(
            session, profile, body.beneficiario_id, body.inicio, body.fin, body.tipo_reserva,
        )
    except services.IncubatorError as exc:
        raise _http_error(exc) from exc
    session.commit()
    result = await services.notify_booking(payload)
    return {**services.booking_dict(booking), "notificacion_enviada": result.ok and not result.skipped}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("incubator.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
