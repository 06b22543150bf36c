"""Tests for persistence-backed services: evaluations, quotas, dashboard, lab, advisory."""
from __future__ import annotations

from datetime import date, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from incubator import services
from incubator.models import Base, Evaluation, QuotaAssignment, Submission
from incubator.notifier import NotificationResult

TEXTS = {f: "Comentario con suficiente detalle" for f in services.EVALUATION_TEXT_FIELDS}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture(autouse=True)
def fresh_population_cache():
    services.population_cache.clear()
    yield
    services.population_cache.clear()


def _user(session: Session, nombres: str, municipio: str = "Cali", roles=("beneficiario",)):
    return services.create_user(session, {
        "nombres": nombres, "apellidos": "Pérez", "email": f"{nombres.lower()}@example.co",
        "celular": "3000000000", "municipio": municipio, "roles": list(roles),
        "genero": "Femenino", "ano_nacimiento": "1990", "departamento": "Valle del Cauca",
    })


def _emp(session: Session, user, equipo_total=3, full_time=1, descripcion="Plataforma de trazabilidad"):
    return services.create_entrepreneurship(session, {
        "user_id": user.id, "nombre": f"Emp {user.nombres}", "descripcion": descripcion,
        "categoria": "Agro",
        "equipo": {"equipo_total": equipo_total, "personas_full_time": full_time},
    })


def _scores(impacto=0, equipo=0, innovacion=0, ventas=0, proyeccion=0, estado="enviada") -> dict:
    return {
        "puntaje_impacto": impacto, "puntaje_equipo": equipo,
        "puntaje_innovacion_tecnologia": innovacion, "puntaje_ventas": ventas,
        "puntaje_proyeccion_financiacion": proyeccion, "estado": estado, **TEXTS,
    }


def _juror(session: Session, emp, nombres: str):
    mentor = _user(session, nombres, roles=("mentor",))
    services.assign_mentor(session, mentor.id, emp.id, es_jurado=True)
    return mentor


@pytest.fixture()
def admin(session):
    return _user(session, "Admin", roles=("admin", "mentor"))


@pytest.fixture()
def candidate(session):
    return _emp(session, _user(session, "Ana", municipio="Palmira"))


# ---------------------------------------------------------------------------
# Entrepreneurships
# ---------------------------------------------------------------------------


class TestEntrepreneurships:
    def test_one_entrepreneurship_per_user(self, session, candidate):
        with pytest.raises(services.ValidationFailed):
            _emp(session, candidate.user)

    def test_update_upserts_team(self, session, candidate):
        services.update_entrepreneurship(candidate, {"etapa": "Validación", "equipo": {"fundadoras": 2}})
        assert candidate.etapa == "Validación"
        assert candidate.equipo.fundadoras == 2
        assert candidate.equipo.equipo_total == 3

    def test_candidate_detail_shape(self, session, candidate):
        detail = services.candidate_detail(candidate.user)
        assert detail["emprendimiento"]["nombre"] == "Emp Ana"
        assert detail["equipo"]["equipo_total"] == 3
        assert detail["cupo"] is None
        assert detail["nivel"] == "Sin evaluar"

    def test_missing_entity(self, session):
        with pytest.raises(services.NotFound):
            services.get_entity(session, Evaluation, 999, "Evaluation")

    def test_partial_team_update_keeps_other_fields(self, session, candidate):
        services.update_entrepreneurship(candidate, {"equipo": {"equipo_total": 5, "personas_full_time": None}})
        assert candidate.equipo.equipo_total == 5
        assert candidate.equipo.personas_full_time == 1

    def test_profile_sections_reach_candidate_detail(self, session, candidate):
        services.save_financing(candidate, {"busca_financiamiento": "Sí", "financiamiento_previo": True,
                                            "tipo_actor": "Ángel inversionista"})
        services.save_projection(candidate, {"principales_objetivos": "Exportar", "intencion_internacionalizacion": True})
        services.save_diagnostic(candidate, "  Buen equipo, ventas incipientes  ", visible=False)
        services.set_authorizations(candidate.user, {"tratamiento_datos": True, "correo": True})
        session.flush()
        detail = services.candidate_detail(candidate.user)
        assert detail["financiamiento"]["tipo_actor"] == "Ángel inversionista"
        assert detail["financiamiento"]["financiamiento_previo"] is True
        assert detail["proyecciones"]["intencion_internacionalizacion"] is True
        assert detail["diagnostico"]["contenido"] == "Buen equipo, ventas incipientes"
        assert detail["diagnostico"]["visible_para_usuario"] is False
        assert detail["autorizaciones"]["tratamiento_datos"] is True
        assert detail["acudiente"] is None

    def test_financing_update_is_partial(self, session, candidate):
        services.save_financing(candidate, {"monto_buscado": "50M", "etapa": "Semilla"})
        services.save_financing(candidate, {"etapa": "Serie A"})
        assert (candidate.financiamiento.monto_buscado, candidate.financiamiento.etapa) == ("50M", "Serie A")

    def test_blank_diagnostic_rejected(self, session, candidate):
        with pytest.raises(services.ValidationFailed):
            services.save_diagnostic(candidate, "   ")

    def test_guardian_only_for_minors(self, session, candidate):
        data = {"nombres": "Luz", "relacion_con_menor": "Madre"}
        with pytest.raises(services.ValidationFailed):
            services.save_guardian(candidate.user, data)
        candidate.user.menor_de_edad = True
        guardian = services.save_guardian(candidate.user, data)
        assert guardian.relacion_con_menor == "Madre"
        assert candidate.user.acudiente is guardian


# ---------------------------------------------------------------------------
# Evaluations
# ---------------------------------------------------------------------------


class TestCCCEvaluation:
    def test_referral_and_eligibility_are_derived(self, session, admin, candidate):
        ev = services.save_ccc_evaluation(session, candidate, admin.id, _scores(20, 15, 15, 10, 3))
        assert ev.puntaje_referido_regional == 5
        assert ev.referido_regional == "Palmira"
        assert ev.puntaje == 20 + 15 + 15 + 10 + 3 + 5
        assert ev.nivel == "Growth"
        assert ev.cumple_equipo_minimo and ev.cumple_dedicacion and ev.cumple_interes
        assert ev.puede_editar is False

    def test_home_city_gets_no_referral(self, session, admin):
        emp = _emp(session, _user(session, "Luis", municipio="cali"))
        ev = services.save_ccc_evaluation(session, emp, admin.id, _scores(10))
        assert ev.puntaje_referido_regional == 0
        assert ev.puntaje == 10

    def test_failing_requirements_are_warnings_only(self, session, admin):
        emp = _emp(session, _user(session, "Sol"), equipo_total=1, full_time=0, descripcion="")
        ev = services.save_ccc_evaluation(session, emp, admin.id, _scores(10))
        d = services.evaluation_dict(ev)
        assert d["cumple_ubicacion"] is True
        assert not (d["cumple_equipo_minimo"] or d["cumple_dedicacion"] or d["cumple_interes"])
        assert len(d["advertencias"]) == 3

    def test_out_of_range_score_rejected(self, session, admin, candidate):
        with pytest.raises(services.ValidationFailed):
            services.save_ccc_evaluation(session, candidate, admin.id, _scores(impacto=31))

    def test_draft_can_be_updated_then_locks(self, session, admin, candidate):
        services.save_ccc_evaluation(session, candidate, admin.id, _scores(10, estado="borrador"))
        ev = services.save_ccc_evaluation(session, candidate, admin.id, _scores(12, estado="enviada"))
        assert ev.puntaje == 17
        assert len(candidate.evaluaciones) == 1
        with pytest.raises(services.EvaluationLocked):
            services.save_ccc_evaluation(session, candidate, admin.id, _scores(30))


class TestJuryEvaluation:
    def test_requires_ccc(self, session, candidate):
        juror = _juror(session, candidate, "Jurado1")
        with pytest.raises(services.ValidationFailed, match="CCC"):
            services.save_jury_evaluation(session, candidate, juror.id, _scores(10))

    def test_requires_active_jury_assignment(self, session, admin, candidate):
        services.save_ccc_evaluation(session, candidate, admin.id, _scores(10))
        outsider = _user(session, "Mentor", roles=("mentor",))
        with pytest.raises(services.ValidationFailed, match="jurado"):
            services.save_jury_evaluation(session, candidate, outsider.id, _scores(10))

    def test_inherits_referral_and_flags(self, session, admin):
        emp = _emp(session, _user(session, "Eva", municipio="Tuluá"), equipo_total=1)
        ccc = services.save_ccc_evaluation(session, emp, admin.id, _scores(10))
        juror = _juror(session, emp, "Jurado1")
        ev = services.save_jury_evaluation(session, emp, juror.id, _scores(20, 10, 10, 5, 2))
        assert ev.evaluacion_base_id == ccc.id
        assert ev.puntaje_referido_regional == 5
        assert ev.puntaje == 52
        assert ev.nivel == "Growth"
        assert ev.cumple_equipo_minimo is False

    def test_submitted_is_locked_draft_is_not(self, session, admin, candidate):
        services.save_ccc_evaluation(session, candidate, admin.id, _scores(10))
        juror = _juror(session, candidate, "Jurado1")
        draft = services.save_jury_evaluation(session, candidate, juror.id, _scores(5, estado="borrador"))
        assert draft.puede_editar is True
        sent = services.save_jury_evaluation(session, candidate, juror.id, _scores(6))
        assert sent.id == draft.id
        with pytest.raises(services.EvaluationLocked):
            services.save_jury_evaluation(session, candidate, juror.id, _scores(7))

    def test_at_most_three_jurors(self, session, admin, candidate):
        services.save_ccc_evaluation(session, candidate, admin.id, _scores(10))
        for i in range(3):
            juror = _juror(session, candidate, f"Jurado{i}")
            services.save_jury_evaluation(session, candidate, juror.id, _scores(10))
        fourth = _juror(session, candidate, "Jurado4")
        with pytest.raises(services.JuryFull):
            services.save_jury_evaluation(session, candidate, fourth.id, _scores(10))

    def test_comparison(self, session, admin, candidate):
        services.save_ccc_evaluation(session, candidate, admin.id, _scores(10))
        for name, impacto in (("J1", 20), ("J2", 30)):
            juror = _juror(session, candidate, name)
            services.save_jury_evaluation(session, candidate, juror.id, _scores(impacto))
        result = services.compare_evaluations(candidate)
        impacto = next(c for c in result["comparacion"] if c["campo"] == "puntaje_impacto")
        assert impacto == {"campo": "puntaje_impacto", "ccc": 10, "promedio_jurado": 25, "diferencia": 15}
        assert len(result["jurado"]) == 2


class TestClassificationScenario:
    def test_max_for_level_average_for_profile(self, session, admin):
        emp = _emp(session, _user(session, "Max", municipio="Cali"))
        services.save_ccc_evaluation(session, emp, admin.id, _scores(10))
        for name, scores in (("J1", (20, 15, 15, 8, 2)), ("J2", (28, 22, 20, 12, 3))):
            juror = _juror(session, emp, name)
            ev = services.save_jury_evaluation(session, emp, juror.id, _scores(*scores))
            services.set_evaluation_visibility(ev, True)
        assert sorted(e.puntaje for e in services.jury_evaluations(emp)) == [60, 85]
        assert services.effective_level(emp) == "Scale"
        summary = services.profile_summary(emp)
        assert summary["puntaje_promedio"] == 72.5
        assert summary["nivel"] == "Scale"
        assert len(summary["evaluaciones"]) == 2

    def test_profile_average_ignores_visible_drafts(self, session, admin):
        emp = _emp(session, _user(session, "Bea", municipio="Cali"))
        draft = services.save_ccc_evaluation(session, emp, admin.id, _scores(5, estado="borrador"))
        services.set_evaluation_visibility(draft, True)
        juror = _juror(session, emp, "J1")
        sent = services.save_jury_evaluation(session, emp, juror.id, _scores(20, 15, 15, 8, 2))
        services.set_evaluation_visibility(sent, True)
        summary = services.profile_summary(emp)
        assert summary["puntaje_promedio"] == 60
        assert [e["id"] for e in summary["evaluaciones"]] == [sent.id]

    def test_profile_shows_only_visible_diagnostic(self, session, candidate):
        services.save_diagnostic(candidate, "Fortalecer ventas", visible=False)
        assert services.profile_summary(candidate)["diagnostico"] is None
        services.save_diagnostic(candidate, "Fortalecer ventas", visible=True)
        assert services.profile_summary(candidate)["diagnostico"] == "Fortalecer ventas"


# ---------------------------------------------------------------------------
# Quotas
# ---------------------------------------------------------------------------


class TestQuotas:
    def test_approve_requires_submitted_jury(self, session, admin, candidate):
        services.save_ccc_evaluation(session, candidate, admin.id, _scores(10))
        juror = _juror(session, candidate, "J1")
        with pytest.raises(services.PendingEvaluations):
            services.approve_quota(session, candidate, "Starter", 1, admin.id)
        services.save_jury_evaluation(session, candidate, juror.id, _scores(10))
        row = services.approve_quota(session, candidate, "Starter", 1, admin.id)
        assert row.estado == "aprobado"
        assert all(e.visible_para_usuario for e in candidate.evaluaciones)
        assert services.is_beneficiary(candidate)

    def test_approved_tier_is_authoritative(self, session, admin, candidate):
        services.save_ccc_evaluation(session, candidate, admin.id, _scores(30, 25, 25, 15, 5))
        services.approve_quota(session, candidate, "Starter", 2, admin.id)
        assert services.effective_level(candidate) == "Starter"

    def test_single_approved_quota(self, session, admin, candidate):
        services.approve_quota(session, candidate, "Growth", 1, admin.id)
        with pytest.raises(services.DuplicateQuota):
            services.approve_quota(session, candidate, "Scale", 1, admin.id)

    def test_tier_capacity(self, session, admin, monkeypatch):
        monkeypatch.setitem(services.QUOTA_LIMITS, "Scale", (1, None))
        first = _emp(session, _user(session, "Uno"))
        second = _emp(session, _user(session, "Dos"))
        row = services.approve_quota(session, first, "Scale", 2, admin.id)
        assert row.cohorte == 1
        with pytest.raises(services.QuotaLimitReached):
            services.approve_quota(session, second, "Scale", 1, admin.id)

    def test_cohort_capacity(self, session, admin, monkeypatch):
        monkeypatch.setitem(services.QUOTA_LIMITS, "Growth", (10, 1))
        first = _emp(session, _user(session, "Uno"))
        second = _emp(session, _user(session, "Dos"))
        services.approve_quota(session, first, "Growth", 1, admin.id)
        with pytest.raises(services.QuotaLimitReached, match="cohorte 1"):
            services.approve_quota(session, second, "Growth", 1, admin.id)
        assert services.approve_quota(session, second, "Growth", 2, admin.id).cohorte == 2
        usage = services.quota_usage(session)["Growth"]
        assert usage["usados"] == 2
        assert usage["cohortes"] == {1: 1, 2: 1}

    def test_reject_then_approve_reuses_row(self, session, admin, candidate):
        rejected = services.reject_quota(session, candidate, "Growth", 1, admin.id, "Falta información")
        assert rejected.estado == "rechazado"
        approved = services.approve_quota(session, candidate, "Growth", 1, admin.id)
        assert approved.id == rejected.id
        assert len(candidate.cupos) == 1

    def test_revert_deletes(self, session, admin, candidate):
        row = services.approve_quota(session, candidate, "Starter", 1, admin.id)
        services.revert_quota(session, row)
        session.commit()
        assert session.execute(select(QuotaAssignment)).scalars().all() == []
        assert services.approved_quota(candidate) is None

    def test_payload(self, session, admin, candidate):
        row = services.approve_quota(session, candidate, "Growth", 2, admin.id)
        assert services.quota_payload(candidate, row) == {
            "accion": "aprobado", "emprendimiento": "Emp Ana", "nombre": "Ana Pérez",
            "email": "ana@example.co", "celular": "3000000000", "nivel": "Growth", "cohorte": 2,
        }

    def test_quota_candidates(self, session, admin, candidate):
        services.save_ccc_evaluation(session, candidate, admin.id, _scores(20, 15, 15, 5))
        _juror(session, candidate, "J1")
        (item,) = services.quota_candidates(session, "Growth")
        assert item["emprendimiento_id"] == candidate.id
        assert item["mentores_asignados"] == 1
        assert item["puede_aprobar"] is False
        assert services.quota_candidates(session, "Scale") == []

    def test_quota_level_rows(self, session, admin):
        alta = _emp(session, _user(session, "Alta"))
        baja = _emp(session, _user(session, "Baja"))
        starter = _emp(session, _user(session, "Cero"))
        _emp(session, _user(session, "Nadie"))
        services.save_ccc_evaluation(session, alta, admin.id, _scores(25, 20, 15, 8, 2))
        services.save_ccc_evaluation(session, baja, admin.id, _scores(20, 15, 15, 8, 2))
        services.save_ccc_evaluation(session, starter, admin.id, _scores(10))
        services.reject_quota(session, baja, "Growth", 2, admin.id)

        rows = services.quota_level_rows(session, "Growth")
        assert [r["nombre"] for r in rows] == ["Emp Alta", "Emp Baja"]
        assert rows[0]["puntaje_promedio"] == 70
        assert (rows[0]["estado_cupo"], rows[0]["cohorte"]) == (None, None)
        assert (rows[1]["estado_cupo"], rows[1]["cohorte"]) == ("rechazado", 2)
        assert [r["nombre"] for r in services.quota_level_rows(session, "Growth", "rechazado")] == ["Emp Baja"]
        assert [r["nombre"] for r in services.quota_level_rows(session, "Growth", "pendiente")] == ["Emp Alta"]
        assert [r["nombre"] for r in services.quota_level_rows(session, "Starter")] == ["Emp Cero"]
        with pytest.raises(services.ValidationFailed):
            services.quota_level_rows(session, "Gold")

    def test_quota_level_includes_approved_tier(self, session, admin, candidate):
        services.save_ccc_evaluation(session, candidate, admin.id, _scores(10))
        services.approve_quota(session, candidate, "Scale", 1, admin.id)
        (row,) = services.quota_level_rows(session, "Scale")
        assert row["estado_cupo"] == "aprobado"
        assert row["cohorte"] is None
        assert services.quota_level_rows(session, "Starter") == []

    @pytest.mark.asyncio
    async def test_notification_failure_is_reported(self, session, admin, candidate):
        row = services.approve_quota(session, candidate, "Growth", 1, admin.id)
        with patch("incubator.notifier._post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = NotificationResult(ok=False, error="timeout")
            result = await services.notify_quota(services.quota_payload(candidate, row))
        assert result.ok is False


# ---------------------------------------------------------------------------
# Population, dashboard & rankings
# ---------------------------------------------------------------------------


@pytest.fixture()
def population(session, admin):
    """Four ventures: Growth beneficiary, Growth quota without role, Growth candidate, unevaluated."""
    beneficiary = _emp(session, _user(session, "Bea"))
    no_role = _emp(session, _user(session, "Nora", roles=()))
    scored = _emp(session, _user(session, "Carlos", municipio="Jamundí"))
    _emp(session, _user(session, "Dani"))
    services.approve_quota(session, beneficiary, "Growth", 1, admin.id)
    services.approve_quota(session, no_role, "Growth", 1, admin.id)
    services.save_ccc_evaluation(session, scored, admin.id, _scores(20, 15, 10, 5))
    session.commit()
    return session


class TestPopulation:
    def test_beneficiaries_growth(self, population):
        items = services.list_candidates(population, "beneficiarios", "Growth")
        assert [i["nombres"] for i in items] == ["Bea"]

    def test_growth_includes_derived(self, population):
        items = services.list_candidates(population, "todos", "Growth")
        assert [i["nombres"] for i in items] == ["Bea", "Nora", "Carlos"]
        assert items[2]["nivel"] == "Growth"
        assert items[2]["es_beneficiario"] is False

    def test_search(self, population):
        assert [i["nombres"] for i in services.list_candidates(population, search="emp carl")] == ["Carlos"]
        assert [i["nombres"] for i in services.list_candidates(population, search="DANI@")] == ["Dani"]

    def test_invalid_facet(self, population):
        with pytest.raises(services.ValidationFailed):
            services.list_candidates(population, "todos", "Gold")

    def test_operator_sees_own_tiers(self, population, admin):
        services.assign_operator(population, admin.id, ["Scale"])
        assert services.list_candidates(population, operador_id=admin.id) == []
        services.assign_operator(population, admin.id, ["Growth", "Growth"])
        assert services.operator_levels(population, admin.id) == ["Growth", "Scale"]
        items = services.list_candidates(population, operador_id=admin.id)
        assert [i["nombres"] for i in items] == ["Bea", "Nora", "Carlos"]

    def test_operator_removal_and_role(self, population, admin):
        services.assign_operator(population, admin.id, ["Starter", "Growth"])
        services.remove_operator(population, admin.id, "Starter")
        assert services.operator_levels(population, admin.id) == ["Growth"]
        services.assign_operator(population, admin.id, ["Starter"])
        assert services.list_operators(population) == [{"mentor_id": admin.id, "niveles": ["Growth", "Starter"]}]
        services.remove_operator(population, admin.id)
        assert services.operator_levels(population, admin.id) == []
        with pytest.raises(services.NotFound):
            services.remove_operator(population, admin.id)
        learner = _user(population, "Lia")
        with pytest.raises(services.ValidationFailed):
            services.assign_operator(population, learner.id, ["Growth"])

    def test_snapshot_only_refreshes_on_request(self, population, admin):
        first = services.dashboard_population(population)
        _emp(population, _user(population, "Eli"))
        assert services.dashboard_population(population) is first
        refreshed = services.dashboard_population(population, refresh=True)
        assert refreshed.revision == first.revision + 1
        assert len(refreshed.rows) == len(first.rows) + 1

    def test_kpis_and_distribution(self, population):
        snap, rows = services.filtered_population(population)
        assert services.compute_kpis(snap, rows) == {
            "total": 4, "candidatos": 2, "beneficiarios": 1, "total_evaluaciones": 1,
        }
        assert services.level_distribution(snap, rows) == {"Growth": 3, "Sin nivel": 1}

    def test_dashboard_rows(self, population):
        sheets = services.dashboard_export_rows(population, today=date(2025, 1, 1))
        general = sheets["General"]
        assert general[0] == services.ExportRow("Usuarios", "Total Usuarios", "-", 4)
        assert services.ExportRow("Usuarios", "Edad Promedio", "-", 35.0) in general
        assert services.ExportRow("Emprendimientos", "Categoría", "Agro", 4) in general
        assert services.ExportRow("Equipos", "Promedio Equipo Total", "-", 3.0) in general
        assert sheets["Scale"] == [services.ExportRow("General", "Sin datos", "-", 0)]
        assert services.ExportRow("Usuarios", "Total Usuarios", "-", 3) in sheets["Growth"]


class TestRankings:
    def test_average_of_ccc_and_submitted_jury(self, session, admin):
        top = _emp(session, _user(session, "Top"))
        low = _emp(session, _user(session, "Low"))
        _emp(session, _user(session, "None"))
        services.save_ccc_evaluation(session, top, admin.id, _scores(30, 20, estado="borrador"))
        juror = _juror(session, top, "J1")
        services.save_jury_evaluation(session, top, juror.id, _scores(30, 10))
        services.save_ccc_evaluation(session, low, admin.id, _scores(10))
        juror2 = _juror(session, low, "J2")
        services.save_jury_evaluation(session, low, juror2.id, _scores(30, 25, 25, 15, 5, estado="borrador"))
        ranking = services.compute_rankings(session)
        assert [(r["posicion"], r["nombre"], r["puntaje_promedio"], r["evaluaciones_completadas"])
                for r in ranking] == [(1, "Emp Top", 45, 2), (2, "Emp Low", 10, 1)]

    def test_limit(self, session, admin):
        for i in range(3):
            emp = _emp(session, _user(session, f"U{i}"))
            services.save_ccc_evaluation(session, emp, admin.id, _scores(i))
        assert len(services.compute_rankings(session, limit=2)) == 2


# ---------------------------------------------------------------------------
# Lab
# ---------------------------------------------------------------------------


@pytest.fixture()
def module(session):
    return services.create_module(session, {"titulo": "Modelo de negocio", "nivel": "Starter", "orden": 1})


@pytest.fixture()
def task(session, module):
    return services.create_task(session, {
        "modulo_id": module.id, "titulo": "Lienzo de modelo de negocio",
        "fecha_limite": datetime(2025, 6, 30, 23, 59), "num_documentos": 2,
        "documentos_obligatorios": True,
    })


FILES = [{"name": "lienzo.pdf", "path": "entregas/1/lienzo.pdf"}]


class TestCurriculum:
    def test_modules_in_order(self, session, module):
        finanzas = services.create_module(session, {"titulo": "Finanzas", "orden": 0, "nivel": "Growth"})
        assert [m.titulo for m in services.list_modules(session)] == ["Finanzas", "Modelo de negocio"]
        assert services.list_modules(session, "Starter") == [module]
        services.update_module(finanzas, {"activo": False, "titulo": None})
        session.flush()
        assert finanzas.titulo == "Finanzas"
        assert services.list_modules(session, solo_activos=True) == [module]

    def test_classes_ordered_with_resources(self, session, module):
        second = services.create_class(session, module, {
            "titulo": "Costos", "orden": 2, "recursos_url": ["https://lab.example.co/costos.pdf"],
        })
        first = services.create_class(session, module, {"titulo": "Propuesta de valor", "orden": 1})
        session.flush()
        session.expire(module)
        assert [c["titulo"] for c in services.module_dict(module, with_classes=True)["clases"]] == [
            "Propuesta de valor", "Costos",
        ]
        assert services.class_dict(second)["recursos_url"] == ["https://lab.example.co/costos.pdf"]
        services.update_class(first, {"recursos_url": ["https://lab.example.co/lienzo.png"], "orden": 3})
        assert services.class_dict(first)["recursos_url"] == ["https://lab.example.co/lienzo.png"]
        services.delete_class(session, second)
        assert [c.titulo for c in module.clases] == ["Propuesta de valor"]

    def test_task_requires_existing_module(self, session):
        with pytest.raises(services.NotFound):
            services.create_task(session, {"modulo_id": 999, "titulo": "X", "fecha_limite": datetime(2025, 1, 1)})

    def test_parse_emails(self):
        raw = " Ana@Example.co ;ana@example.co\r\nbeto@example.co,,sin-arroba\n"
        assert services.parse_emails(raw) == ["ana@example.co", "beto@example.co"]

    def test_register_attendance(self, session, module, candidate):
        clase = services.create_class(session, module, {"titulo": "Pitch"})
        _user(session, "Otro")
        result = services.register_attendance(
            session, clase, "ANA@example.co; otro@example.co\nnadie@example.co",
        )
        assert result == {
            "registrados": ["ana@example.co", "otro@example.co"],
            "ya_registrados": [],
            "no_encontrados": ["nadie@example.co"],
        }
        again = services.register_attendance(session, clase, "ana@example.co")
        assert again["ya_registrados"] == ["ana@example.co"]
        assert [a["email"] for a in services.class_attendees(session, clase)] == [
            "ana@example.co", "otro@example.co",
        ]
        assert all(p.progreso_porcentaje == 100 for p in clase.progreso)
        with pytest.raises(services.ValidationFailed):
            services.register_attendance(session, clase, "sin correos")

    def test_module_progress(self, session, admin, module, candidate):
        intro = services.create_class(session, module, {"titulo": "Intro", "orden": 1})
        services.create_class(session, module, {"titulo": "Cierre", "orden": 2})
        services.approve_quota(session, candidate, "Starter", 1, admin.id)
        growth = _emp(session, _user(session, "Gus"))
        services.approve_quota(session, growth, "Growth", 1, admin.id)
        services.register_attendance(session, intro, "ana@example.co, gus@example.co")

        (item,) = services.module_progress(session, "Starter")
        assert item["total_clases"] == 2
        assert [(e["nombres"], e["clases_completadas"], e["progreso"]) for e in item["estudiantes"]] == [
            ("Ana", 1, 50),
        ]
        assert item["progreso_promedio"] == 50


class TestLab:
    def test_submit_and_resubmit(self, session, task, candidate):
        before = datetime(2025, 6, 1)
        sub = services.submit_task(session, task, candidate.user_id, FILES, "v1", now=before)
        services.grade_submission(sub, "rechazado", "Falta el análisis de costos")
        again = services.submit_task(session, task, candidate.user_id, FILES * 2, "v2", now=before)
        assert again.id == sub.id
        assert again.estado == "entregado"
        assert len(services.submission_dict(again)["archivos"]) == 2
        assert len(session.execute(select(Submission)).scalars().all()) == 1

    def test_closed_after_deadline(self, session, task, candidate):
        with pytest.raises(services.SubmissionClosed):
            services.submit_task(session, task, candidate.user_id, FILES, now=datetime(2025, 7, 1))

    def test_requires_a_file(self, session, task, candidate):
        with pytest.raises(services.ValidationFailed):
            services.submit_task(session, task, candidate.user_id, [], now=datetime(2025, 6, 1))

    def test_mandatory_count_is_a_maximum(self, session, task, candidate):
        with pytest.raises(services.ValidationFailed, match="máximo 2"):
            services.submit_task(session, task, candidate.user_id, FILES * 3, now=datetime(2025, 6, 1))

    def test_grade(self, session, task, candidate):
        sub = services.submit_task(session, task, candidate.user_id, FILES, now=datetime(2025, 6, 1))
        services.grade_submission(sub, "aprobado", "Muy bien", 4.5)
        d = services.submission_dict(sub)
        assert (d["estado"], d["feedback"], d["nota"]) == ("aprobado", "Muy bien", 4.5)
        with pytest.raises(services.ValidationFailed):
            services.grade_submission(sub, "perdido")

    def test_pending_tasks(self, session, module, task, candidate):
        now = datetime(2025, 6, 1)
        later = services.create_task(session, {
            "modulo_id": module.id, "titulo": "Pitch", "fecha_limite": now + timedelta(days=60),
        })
        services.create_task(session, {"modulo_id": module.id, "titulo": "Vencida", "fecha_limite": now - timedelta(days=1)})
        assert [t.id for t in services.pending_tasks(session, candidate.user_id, now=now)] == [task.id, later.id]
        services.submit_task(session, task, candidate.user_id, FILES, now=now)
        assert [t.id for t in services.pending_tasks(session, candidate.user_id, now=now)] == [later.id]


# ---------------------------------------------------------------------------
# Advisory sessions
# ---------------------------------------------------------------------------


class TestAdvisory:
    def test_book_builds_pending_booking_and_payload(self, session, admin, candidate):
        profile = services.create_advisory_profile(session, {
            "mentor_id": admin.id, "titulo": "Finanzas", "duracion_minutos": 45,
        })
        booking, payload = services.book_advisory(session, profile, candidate.user_id, datetime(2025, 8, 1, 9, 0))
        assert booking.estado == "pendiente"
        assert booking.tipo_reserva == "normal"
        assert payload["hora_fin"] == "2025-08-01 09:45:00"
        assert payload["id_reserva"] == str(booking.id)
        assert payload["id_asesor"] == str(admin.id)

    def test_profile_requires_mentor_role(self, session, candidate):
        with pytest.raises(services.ValidationFailed):
            services.create_advisory_profile(session, {"mentor_id": candidate.user_id, "titulo": "X"})

    def test_inactive_profile(self, session, admin, candidate):
        profile = services.create_advisory_profile(session, {"mentor_id": admin.id, "titulo": "X"})
        profile.activo = False
        with pytest.raises(services.ValidationFailed):
            services.book_advisory(session, profile, candidate.user_id, datetime(2025, 8, 1, 9, 0))

    def test_availability_sorted_by_day_then_hour(self, session, admin):
        for dia, inicio, fin in ((3, "14:00", "15:00"), (1, "09:00", "10:00"), (1, "08:00", "09:00")):
            services.add_availability(session, {
                "mentor_id": admin.id, "dia_semana": dia, "hora_inicio": inicio, "hora_fin": fin,
            })
        slots = services.list_availability(session, admin.id)
        assert [(s.dia_semana, s.hora_inicio) for s in slots] == [(1, "08:00"), (1, "09:00"), (3, "14:00")]
        services.delete_availability(session, slots[0])
        assert len(services.list_availability(session, admin.id)) == 2

    def test_availability_checks(self, session, admin, candidate):
        slot = {"dia_semana": 2, "hora_inicio": "10:00", "hora_fin": "09:00"}
        with pytest.raises(services.ValidationFailed):
            services.add_availability(session, {"mentor_id": admin.id, **slot})
        with pytest.raises(services.ValidationFailed):
            services.add_availability(session, {"mentor_id": candidate.user_id, **slot, "hora_fin": "11:00"})

    @pytest.mark.asyncio
    async def test_notify_booking_delegates(self):
        with patch("incubator.notifier._post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = NotificationResult(ok=True, status_code=200)
            result = await services.notify_booking({"id_reserva": "1"})
        assert result.ok
        assert mock_post.await_args.kwargs == {"data": {"id_reserva": "1"}}
