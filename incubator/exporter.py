"""Spreadsheet export builders (openpyxl).

Every builder takes plain dicts (as produced by ``services``) and returns the
serialised ``.xlsx`` bytes, so the API layer only has to stream them.
"""
from __future__ import annotations

import csv
import io
import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Any, Iterable

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill

log = logging.getLogger(__name__)

NA = "N/A"

# (key, label) in display order; all selected by default
CANDIDATE_SECTIONS: tuple[tuple[str, str], ...] = (
    ("personal", "Información Personal"),
    ("contacto", "Contacto y Ubicación"),
    ("autorizaciones", "Autorizaciones"),
    ("acudiente", "Acudiente"),
    ("emprendimiento", "Emprendimiento"),
    ("equipo", "Equipo"),
    ("financiamiento", "Financiamiento"),
    ("proyecciones", "Proyecciones"),
    ("diagnostico", "Diagnóstico"),
    ("evaluaciones", "Evaluaciones"),
    ("cupo", "Estado del Cupo"),
)
SECTION_KEYS = frozenset(k for k, _ in CANDIDATE_SECTIONS)

_HEADER_FONT = Font(bold=True, color="FFFFFF")
_HEADER_FILL = PatternFill("solid", fgColor="1F4E78")


class EmptySelection(ValueError):
    """No export section was selected."""


@dataclass(frozen=True)
class ExportRow:
    Seccion: str
    Grafico: str
    Categoria: str
    Valor: Any


# ---------------------------------------------------------------------------
# Cell helpers
# ---------------------------------------------------------------------------


def yes_no(value: Any) -> str:
    return "Sí" if value else "No"


def na(value: Any) -> Any:
    return value if value not in (None, "") else NA


def fecha(value: datetime | date | str | None) -> str:
    """Short Colombian-style date (d/m/yyyy)."""
    if not value:
        return NA
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return value
    return f"{value.day}/{value.month}/{value.year}"


def _append_sheet(wb: Workbook, title: str, records: list[dict[str, Any]]) -> None:
    """Write records as a table: header row from the union of keys, one row each."""
    ws = wb.create_sheet(title=title[:31])
    headers: list[str] = []
    for rec in records:
        for key in rec:
            if key not in headers:
                headers.append(key)
    ws.append(headers)
    for cell in ws[1]:
        cell.font = _HEADER_FONT
        cell.fill = _HEADER_FILL
        cell.alignment = Alignment(vertical="center", wrap_text=True)
    for rec in records:
        ws.append([rec.get(h, "") for h in headers])
    for idx, header in enumerate(headers, start=1):
        width = max([len(str(header))] + [len(str(r.get(header, ""))) for r in records])
        ws.column_dimensions[ws.cell(row=1, column=idx).column_letter].width = min(max(width + 2, 10), 60)
    ws.freeze_panes = "A2"


def _new_workbook() -> Workbook:
    wb = Workbook()
    wb.remove(wb.active)
    return wb


def _to_bytes(wb: Workbook) -> bytes:
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Single candidate export
# ---------------------------------------------------------------------------


def _general_record(c: dict, selected: set[str]) -> dict[str, Any]:
    rec: dict[str, Any] = {}
    if "personal" in selected:
        rec.update({
            "Nombres": c.get("nombres", ""),
            "Apellidos": c.get("apellidos", ""),
            "Tipo de Documento": na(c.get("tipo_documento")),
            "Número de Identificación": na(c.get("numero_identificacion")),
            "Género": na(c.get("genero")),
            "Año de Nacimiento": na(c.get("ano_nacimiento")),
            "Identificación Étnica": na(c.get("identificacion_etnica")),
            "Menor de Edad": yes_no(c.get("menor_de_edad")),
            "Nivel de Inglés": na(c.get("nivel_ingles")),
            "Biografía": na(c.get("biografia")),
        })
    if "contacto" in selected:
        rec.update({
            "Email": na(c.get("email")),
            "Celular": na(c.get("celular")),
            "Dirección": na(c.get("direccion")),
            "Departamento": na(c.get("departamento")),
            "Municipio": na(c.get("municipio")),
        })
    aut = c.get("autorizaciones")
    if "autorizaciones" in selected and aut:
        rec.update({
            "Autoriza Tratamiento de Datos": yes_no(aut.get("tratamiento_datos")),
            "Autoriza Datos Sensibles": yes_no(aut.get("datos_sensibles")),
            "Autoriza Contacto por Correo": yes_no(aut.get("correo")),
            "Autoriza Contacto por Celular": yes_no(aut.get("celular")),
        })
    acu = c.get("acudiente")
    if "acudiente" in selected and acu:
        rec.update({
            "Acudiente - Nombres": acu.get("nombres", ""),
            "Acudiente - Apellidos": acu.get("apellidos", ""),
            "Acudiente - Relación": acu.get("relacion_con_menor", ""),
            "Acudiente - Email": na(acu.get("email")),
            "Acudiente - Celular": na(acu.get("celular")),
            "Acudiente - Tipo Doc": na(acu.get("tipo_documento")),
            "Acudiente - Identificación": na(acu.get("numero_identificacion")),
        })
    cupo = c.get("cupo")
    if "cupo" in selected and cupo:
        rec.update({
            "Estado del Cupo": na(cupo.get("estado")),
            "Nivel del Cupo": na(cupo.get("nivel")),
            "Cohorte": na(cupo.get("cohorte")),
            "Notas del Cupo": na(cupo.get("notas")),
            "Fecha de Asignación": fecha(cupo.get("fecha_asignacion")),
        })
    return rec


def _emprendimiento_record(e: dict) -> dict[str, Any]:
    return {
        "Nombre": e.get("nombre", ""),
        "Descripción": na(e.get("descripcion")),
        "Categoría": na(e.get("categoria")),
        "Etapa": na(e.get("etapa")),
        "Nivel Definitivo": na(e.get("nivel_definitivo")),
        "Industria Vertical": na(e.get("industria_vertical")),
        "Año de Fundación": na(e.get("ano_fundacion")),
        "Estado Unidad Productiva": na(e.get("estado_unidad_productiva")),
        "Tipo de Cliente": na(e.get("tipo_cliente")),
        "Alcance de Mercado": na(e.get("alcance_mercado")),
        "Ventas Último Año": na(e.get("ventas_ultimo_ano")),
        "Página Web": na(e.get("pagina_web")),
        "Nivel de Innovación": na(e.get("nivel_innovacion")),
        "Integración Tecnológica": na(e.get("integracion_tecnologia")),
        "Plan de Negocios": na(e.get("plan_negocios")),
        "Formalización": yes_no(e.get("formalizacion")),
    }


def _equipo_record(t: dict) -> dict[str, Any]:
    return {
        "Equipo Total": t.get("equipo_total") or 0,
        "Fundadoras": t.get("fundadoras") or 0,
        "Colaboradoras": t.get("colaboradoras") or 0,
        "Colaboradores Jóvenes": t.get("colaboradores_jovenes") or 0,
        "Personas Full-time": t.get("personas_full_time") or 0,
        "Equipo Técnico": yes_no(t.get("equipo_tecnico")),
        "Organigrama": na(t.get("organigrama")),
        "Tipo de Decisiones": na(t.get("tipo_decisiones")),
    }


def _financiamiento_record(f: dict) -> dict[str, Any]:
    return {
        "Busca Financiamiento": na(f.get("busca_financiamiento")),
        "Monto Buscado": na(f.get("monto_buscado")),
        "Financiamiento Previo": yes_no(f.get("financiamiento_previo")),
        "Monto Recibido": na(f.get("monto_recibido")),
        "Tipo de Actor": na(f.get("tipo_actor")),
        "Tipo de Inversión": na(f.get("tipo_inversion")),
        "Etapa": na(f.get("etapa")),
    }


def _proyecciones_record(p: dict) -> dict[str, Any]:
    return {
        "Principales Objetivos": na(p.get("principales_objetivos")),
        "Desafíos": na(p.get("desafios")),
        "Acciones de Crecimiento": na(p.get("acciones_crecimiento")),
        "Impacto": na(p.get("impacto")),
        "Intención Internacionalización": yes_no(p.get("intencion_internacionalizacion")),
        "Decisiones Acciones Crecimiento": yes_no(p.get("decisiones_acciones_crecimiento")),
    }


def evaluation_record(idx: int, ev: dict) -> dict[str, Any]:
    return {
        "Evaluación #": idx,
        "Tipo": (ev.get("tipo_evaluacion") or "").upper(),
        "Nivel": na(ev.get("nivel")),
        "Puntaje Total": ev.get("puntaje") or 0,
        "Puntaje Impacto": ev.get("puntaje_impacto") or 0,
        "Puntaje Equipo": ev.get("puntaje_equipo") or 0,
        "Puntaje Innovación/Tecnología": ev.get("puntaje_innovacion_tecnologia") or 0,
        "Puntaje Ventas": ev.get("puntaje_ventas") or 0,
        "Puntaje Proyección/Financiación": ev.get("puntaje_proyeccion_financiacion") or 0,
        "Puntaje Referido Regional": ev.get("puntaje_referido_regional") or 0,
        "Cumple Ubicación": yes_no(ev.get("cumple_ubicacion")),
        "Cumple Equipo Mínimo": yes_no(ev.get("cumple_equipo_minimo")),
        "Cumple Dedicación": yes_no(ev.get("cumple_dedicacion")),
        "Cumple Interés": yes_no(ev.get("cumple_interes")),
        "Retroalimentación Impacto": na(ev.get("impacto_texto")),
        "Retroalimentación Equipo": na(ev.get("equipo_texto")),
        "Retroalimentación Innovación": na(ev.get("innovacion_tecnologia_texto")),
        "Retroalimentación Ventas": na(ev.get("ventas_texto")),
        "Retroalimentación Proyección": na(ev.get("proyeccion_financiacion_texto")),
        "Comentarios Adicionales": na(ev.get("comentarios_adicionales")),
        "Fecha": fecha(ev.get("created_at")),
    }


def candidate_workbook(candidate: dict, sections: Iterable[str] | None = None) -> Workbook:
    """Build the per-candidate workbook for the selected sections.

    Personal, contact, authorisation, guardian and quota data are flattened
    into a single "Información General" sheet; every other section gets its
    own sheet.  Sections whose data is missing are skipped silently.
    """
    selected = set(SECTION_KEYS if sections is None else sections)
    unknown = selected - SECTION_KEYS
    if unknown:
        raise ValueError(f"Unknown export sections: {', '.join(sorted(unknown))}")
    if not selected:
        raise EmptySelection("Selecciona al menos una sección para exportar")

    wb = _new_workbook()
    general = _general_record(candidate, selected)
    if general:
        _append_sheet(wb, "Información General", [general])

    emp = candidate.get("emprendimiento")
    if "emprendimiento" in selected and emp:
        _append_sheet(wb, "Emprendimiento", [_emprendimiento_record(emp)])
    if "equipo" in selected and candidate.get("equipo"):
        _append_sheet(wb, "Equipo", [_equipo_record(candidate["equipo"])])
    if "financiamiento" in selected and candidate.get("financiamiento"):
        _append_sheet(wb, "Financiamiento", [_financiamiento_record(candidate["financiamiento"])])
    if "proyecciones" in selected and candidate.get("proyecciones"):
        _append_sheet(wb, "Proyecciones", [_proyecciones_record(candidate["proyecciones"])])
    diag = candidate.get("diagnostico") or {}
    if "diagnostico" in selected and diag.get("contenido"):
        _append_sheet(wb, "Diagnóstico", [{
            "Contenido": diag["contenido"],
            "Última Actualización": fecha(diag.get("updated_at")),
        }])
    evals = candidate.get("evaluaciones_detalle") or []
    if "evaluaciones" in selected and evals:
        _append_sheet(wb, "Evaluaciones", [evaluation_record(i, ev) for i, ev in enumerate(evals, start=1)])

    if not wb.sheetnames:
        # openpyxl cannot save a workbook without sheets
        _append_sheet(wb, "Información General", [{"Sin datos": NA}])
    return wb


def candidate_export(candidate: dict, sections: Iterable[str] | None = None) -> bytes:
    return _to_bytes(candidate_workbook(candidate, sections))


def candidate_filename(candidate: dict, today: date | None = None) -> str:
    today = today or date.today()
    return f"{candidate.get('nombres', '')}_{candidate.get('apellidos', '')}_{today.isoformat()}.xlsx"


# ---------------------------------------------------------------------------
# Candidate list export
# ---------------------------------------------------------------------------


def candidate_list_record(c: dict) -> dict[str, Any]:
    emp = c.get("emprendimiento") or {}
    cupo = c.get("cupo") or {}
    equipo = c.get("equipo") or {}
    fin = c.get("financiamiento") or {}
    return {
        "Nombres": c.get("nombres", ""),
        "Apellidos": c.get("apellidos", ""),
        "Email": c.get("email", ""),
        "Celular": c.get("celular", ""),
        "Identificación": c.get("numero_identificacion", ""),
        "Departamento": c.get("departamento", ""),
        "Municipio": c.get("municipio", ""),
        "Emprendimiento": na(emp.get("nombre")),
        "Categoría": na(emp.get("categoria")),
        "Etapa": na(emp.get("etapa")),
        "Nivel Definitivo": na(emp.get("nivel_definitivo")),
        "Estado Cupo": cupo.get("estado") or "Sin cupo",
        "Nivel": na(cupo.get("nivel")),
        "Cohorte": na(cupo.get("cohorte")),
        "Equipo Total": equipo.get("equipo_total") or 0,
        "Fundadoras": equipo.get("fundadoras") or 0,
        "Equipo Técnico": yes_no(equipo.get("equipo_tecnico")),
        "Busca Financiamiento": na(fin.get("busca_financiamiento")),
        "Monto Buscado": na(fin.get("monto_buscado")),
        "Evaluaciones": c.get("evaluaciones") or 0,
    }


def candidate_list_export(candidates: list[dict]) -> bytes:
    wb = _new_workbook()
    _append_sheet(wb, "Candidatos", [candidate_list_record(c) for c in candidates])
    return _to_bytes(wb)


# ---------------------------------------------------------------------------
# Dashboard export
# ---------------------------------------------------------------------------

DASHBOARD_SHEETS = ("General", "Starter", "Growth", "Scale")


def dashboard_export(rows_by_sheet: dict[str, list[ExportRow]]) -> bytes:
    """One sheet per level filter (General = todos), rows as Seccion/Grafico/Categoria/Valor."""
    wb = _new_workbook()
    for sheet in DASHBOARD_SHEETS:
        rows = rows_by_sheet.get(sheet) or [ExportRow("General", "Sin datos", "-", 0)]
        _append_sheet(wb, sheet, [asdict(r) for r in rows])
    return _to_bytes(wb)


# ---------------------------------------------------------------------------
# Quota level export
# ---------------------------------------------------------------------------


def quota_level_record(row: dict, with_cohort: bool) -> dict[str, Any]:
    rec = {
        "Emprendimiento": row["nombre"],
        "Beneficiario": row["beneficiario"],
        "Puntaje Promedio": row["puntaje_promedio"],
        "Evaluaciones": row["total_evaluaciones"],
        "Mentores Asignados": row["mentores_asignados"],
        "Evaluaciones Completadas": row["evaluaciones_completadas"],
        "Estado": row.get("estado_cupo") or "Pendiente",
    }
    if with_cohort:
        rec["Cohorte"] = row.get("cohorte") or "-"
    return rec


def quota_level_sheet_name(nivel: str, estado: str | None = None) -> str:
    return f"{nivel} - {estado.capitalize()}" if estado else f"{nivel} - Todos"


def quota_level_export(rows: list[dict], nivel: str, estado: str | None = None, with_cohort: bool = True) -> bytes:
    """One sheet of the tier's entrepreneurships, optionally restricted to a quota state."""
    wb = _new_workbook()
    records = [quota_level_record(r, with_cohort) for r in rows]
    _append_sheet(wb, quota_level_sheet_name(nivel, estado), records or [{"Emprendimiento": NA}])
    return _to_bytes(wb)


def quota_level_filename(nivel: str, estado: str | None = None, today: date | None = None) -> str:
    today = today or date.today()
    return f"{nivel}_{estado or 'todos'}_{today.isoformat()}.xlsx"


# ---------------------------------------------------------------------------
# Rankings export
# ---------------------------------------------------------------------------

RANKING_HEADERS = ["Posición", "Emprendimiento", "Beneficiario", "Email", "Puntaje Promedio", "Evaluaciones Completadas"]


def rankings_csv(rankings: list[dict]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(RANKING_HEADERS)
    for r in rankings:
        writer.writerow([
            r["posicion"], r["nombre"], r["beneficiario"], r["email"],
            f"{r['puntaje_promedio']:.2f}", r["evaluaciones_completadas"],
        ])
    return buf.getvalue()
