"""Pydantic request/response schemas for the Incubator API."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from incubator.exporter import SECTION_KEYS
from incubator.scoring import RUBRIC_CAPS

NivelName = Literal["Starter", "Growth", "Scale"]


# ---------------------------------------------------------------------------
# Users & entrepreneurships
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    nombres: str
    apellidos: str = ""
    email: str = ""
    celular: str = ""
    tipo_documento: str = ""
    numero_identificacion: str = ""
    genero: str = ""
    direccion: str = ""
    ano_nacimiento: str = ""
    identificacion_etnica: str = ""
    biografia: str = ""
    nivel_ingles: str = ""
    menor_de_edad: bool = False
    departamento: str = ""
    municipio: str = ""
    roles: list[str] = []

    @field_validator("roles")
    @classmethod
    def roles_known(cls, v: list[str]) -> list[str]:
        allowed = {"admin", "mentor", "beneficiario", "operador"}
        bad = [r for r in v if r not in allowed]
        if bad:
            raise ValueError(f"Unknown roles: {', '.join(bad)}")
        return v


class UserOut(BaseModel):
    id: int
    nombres: str
    apellidos: str
    email: str
    departamento: str
    municipio: str
    roles: list[str] = []


class TeamIn(BaseModel):
    equipo_total: int = Field(0, ge=0)
    personas_full_time: int = Field(0, ge=0)
    fundadoras: int = Field(0, ge=0)
    colaboradoras: int = Field(0, ge=0)
    colaboradores_jovenes: int = Field(0, ge=0)
    equipo_tecnico: bool = False
    organigrama: str = ""
    tipo_decisiones: str = ""


class TeamUpdate(BaseModel):
    equipo_total: int | None = Field(None, ge=0)
    personas_full_time: int | None = Field(None, ge=0)
    fundadoras: int | None = Field(None, ge=0)
    colaboradoras: int | None = Field(None, ge=0)
    colaboradores_jovenes: int | None = Field(None, ge=0)
    equipo_tecnico: bool | None = None
    organigrama: str | None = None
    tipo_decisiones: str | None = None


class FinancingIn(BaseModel):
    busca_financiamiento: str | None = None
    monto_buscado: str | None = None
    financiamiento_previo: bool | None = None
    monto_recibido: str | None = None
    tipo_actor: str | None = None
    tipo_inversion: str | None = None
    etapa: str | None = None


class ProjectionIn(BaseModel):
    principales_objetivos: str | None = None
    desafios: str | None = None
    impacto: str | None = None
    acciones_crecimiento: str | None = None
    decisiones_acciones_crecimiento: bool | None = None
    intencion_internacionalizacion: bool | None = None


class EntrepreneurshipCreate(BaseModel):
    user_id: int
    nombre: str
    descripcion: str = ""
    categoria: str = ""
    etapa: str = ""
    industria_vertical: str = ""
    alcance_mercado: str = ""
    tipo_cliente: str = ""
    pagina_web: str = ""
    ano_fundacion: str = ""
    ventas_ultimo_ano: str = ""
    nivel_innovacion: str = ""
    integracion_tecnologia: str = ""
    plan_negocios: str = ""
    formalizacion: bool = False
    estado_unidad_productiva: str = ""
    equipo: TeamIn | None = None
    financiamiento: FinancingIn | None = None
    proyecciones: ProjectionIn | None = None


class EntrepreneurshipUpdate(BaseModel):
    nombre: str | None = None
    descripcion: str | None = None
    categoria: str | None = None
    etapa: str | None = None
    nivel_definitivo: NivelName | None = None
    industria_vertical: str | None = None
    alcance_mercado: str | None = None
    tipo_cliente: str | None = None
    pagina_web: str | None = None
    ano_fundacion: str | None = None
    ventas_ultimo_ano: str | None = None
    nivel_innovacion: str | None = None
    integracion_tecnologia: str | None = None
    plan_negocios: str | None = None
    formalizacion: bool | None = None
    estado_unidad_productiva: str | None = None
    equipo: TeamUpdate | None = None
    financiamiento: FinancingIn | None = None
    proyecciones: ProjectionIn | None = None


class DiagnosticIn(BaseModel):
    contenido: str
    visible_para_usuario: bool = True

    @field_validator("contenido")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Escribe el diagnóstico")
        return v


class AuthorizationIn(BaseModel):
    tratamiento_datos: bool | None = None
    datos_sensibles: bool | None = None
    correo: bool | None = None
    celular: bool | None = None


class GuardianIn(BaseModel):
    nombres: str
    apellidos: str = ""
    relacion_con_menor: str
    email: str = ""
    celular: str = ""
    tipo_documento: str = ""
    numero_identificacion: str = ""


class EntrepreneurshipOut(BaseModel):
    id: int
    user_id: int
    nombre: str
    descripcion: str
    categoria: str
    etapa: str
    nivel_definitivo: str
    nivel: str
    es_beneficiario: bool
    puntaje_maximo: float | None = None
    evaluaciones: int = 0


# ---------------------------------------------------------------------------
# Evaluations
# ---------------------------------------------------------------------------


class _RubricScores(BaseModel):
    puntaje_impacto: float = 0
    puntaje_equipo: float = 0
    puntaje_innovacion_tecnologia: float = 0
    puntaje_ventas: float = 0
    puntaje_proyeccion_financiacion: float = 0

    @model_validator(mode="after")
    def within_caps(self):
        for name, cap in RUBRIC_CAPS.items():
            value = getattr(self, f"puntaje_{name}", None)
            if value is None:
                continue
            if value < 0 or value > cap:
                raise ValueError(f"El puntaje no puede exceder {cap:g} puntos ({name})")
        return self


class EvaluationIn(_RubricScores):
    mentor_id: int
    impacto_texto: str = ""
    equipo_texto: str = ""
    innovacion_tecnologia_texto: str = ""
    ventas_texto: str = ""
    proyeccion_financiacion_texto: str = ""
    comentarios_adicionales: str = ""
    estado: Literal["borrador", "enviada"] = "borrador"

    @model_validator(mode="after")
    def rationale_on_submit(self):
        if self.estado != "enviada":
            return self
        for field in ("impacto_texto", "equipo_texto", "innovacion_tecnologia_texto",
                      "ventas_texto", "proyeccion_financiacion_texto"):
            if len(getattr(self, field).strip()) < 10:
                raise ValueError(f"Debes agregar comentarios ({field}, mínimo 10 caracteres)")
        return self


class EvaluationOut(BaseModel):
    id: int
    emprendimiento_id: int
    mentor_id: int | None = None
    tipo_evaluacion: str
    estado: str
    puede_editar: bool
    visible_para_usuario: bool
    nivel: str
    puntaje: float | None = None
    puntaje_impacto: float
    puntaje_equipo: float
    puntaje_innovacion_tecnologia: float
    puntaje_ventas: float
    puntaje_proyeccion_financiacion: float
    puntaje_referido_regional: float
    impacto_texto: str = ""
    equipo_texto: str = ""
    innovacion_tecnologia_texto: str = ""
    ventas_texto: str = ""
    proyeccion_financiacion_texto: str = ""
    comentarios_adicionales: str = ""
    cumple_ubicacion: bool
    cumple_equipo_minimo: bool
    cumple_dedicacion: bool
    cumple_interes: bool
    advertencias: list[str] = []
    created_at: str | None = None


class VisibilityUpdate(BaseModel):
    visible: bool


class ScorePreviewIn(_RubricScores):
    puntaje_referido_regional: float = Field(0, ge=0, le=RUBRIC_CAPS["referido_regional"])


# ---------------------------------------------------------------------------
# Quotas & assignments
# ---------------------------------------------------------------------------


class QuotaDecisionIn(BaseModel):
    emprendimiento_id: int
    nivel: NivelName
    cohorte: int = Field(1, ge=1)
    admin_id: int | None = None
    notas: str = ""


class QuotaOut(BaseModel):
    id: int
    emprendimiento_id: int
    nivel: str
    cohorte: int
    estado: str
    notas: str = ""
    fecha_asignacion: str | None = None
    notificacion_enviada: bool | None = None


class AssignmentIn(BaseModel):
    mentor_id: int
    emprendimiento_id: int
    es_jurado: bool = False


class AssignmentOut(BaseModel):
    id: int
    mentor_id: int
    emprendimiento_id: int
    es_jurado: bool
    activo: bool


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


class CandidateExportIn(BaseModel):
    sections: list[str] = sorted(SECTION_KEYS)

    @field_validator("sections")
    @classmethod
    def sections_known(cls, v: list[str]) -> list[str]:
        unknown = set(v) - SECTION_KEYS
        if unknown:
            raise ValueError(f"Unknown export sections: {', '.join(sorted(unknown))}")
        if not v:
            raise ValueError("Selecciona al menos una sección para exportar")
        return v


# ---------------------------------------------------------------------------
# Lab
# ---------------------------------------------------------------------------


class ModuleCreate(BaseModel):
    titulo: str
    descripcion: str = ""
    duracion: str = ""
    orden: int = 0
    activo: bool = True
    imagen_url: str = ""
    nivel: NivelName = "Starter"


class ModuleUpdate(BaseModel):
    titulo: str | None = None
    descripcion: str | None = None
    duracion: str | None = None
    orden: int | None = None
    activo: bool | None = None
    imagen_url: str | None = None
    nivel: NivelName | None = None


class ClassCreate(BaseModel):
    titulo: str
    descripcion: str = ""
    contenido: str = ""
    video_url: str = ""
    duracion_minutos: int = Field(0, ge=0)
    orden: int = 0
    recursos_url: list[str] = []


class ClassUpdate(BaseModel):
    titulo: str | None = None
    descripcion: str | None = None
    contenido: str | None = None
    video_url: str | None = None
    duracion_minutos: int | None = Field(None, ge=0)
    orden: int | None = None
    recursos_url: list[str] | None = None


class AttendanceIn(BaseModel):
    emails: str = Field(..., description="Emails separated by commas, semicolons or new lines")


class TaskCreate(BaseModel):
    modulo_id: int
    titulo: str
    descripcion: str = ""
    fecha_limite: datetime
    num_documentos: int = Field(1, ge=1)
    documentos_obligatorios: bool = False


class SubmissionFile(BaseModel):
    name: str
    path: str


class SubmissionIn(BaseModel):
    user_id: int
    archivos: list[SubmissionFile]
    comentario: str = ""


class GradeIn(BaseModel):
    estado: Literal["entregado", "revisado", "aprobado", "rechazado"]
    feedback: str | None = None
    nota: float | None = Field(None, ge=0)


class SubmissionOut(BaseModel):
    id: int
    tarea_id: int
    user_id: int
    comentario: str
    archivos: list[dict[str, Any]]
    estado: str
    feedback: str
    nota: float | None = None
    fecha_entrega: str | None = None


# ---------------------------------------------------------------------------
# Advisory sessions
# ---------------------------------------------------------------------------


class AdvisoryProfileCreate(BaseModel):
    mentor_id: int
    titulo: str
    descripcion: str = ""
    duracion_minutos: int = Field(60, ge=15, le=480)
    link_calendario_externo: str = ""


class BookingIn(BaseModel):
    beneficiario_id: int
    inicio: datetime
    fin: datetime | None = None
    tipo_reserva: Literal["normal", "calendario_externo"] = "normal"

    @model_validator(mode="after")
    def fin_after_inicio(self):
        if self.fin is not None and self.fin <= self.inicio:
            raise ValueError("La hora de fin debe ser posterior a la de inicio")
        return self


class BookingOut(BaseModel):
    id: int
    perfil_asesoria_id: int
    beneficiario_id: int
    mentor_id: int
    fecha_reserva: str
    estado: str
    tipo_reserva: str
    notificacion_enviada: bool | None = None


class AvailabilityIn(BaseModel):
    mentor_id: int
    dia_semana: int = Field(..., ge=0, le=6)
    hora_inicio: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    hora_fin: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$")

    @model_validator(mode="after")
    def fin_after_inicio(self):
        if self.hora_fin <= self.hora_inicio:
            raise ValueError("La hora de fin debe ser posterior a la de inicio")
        return self


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------


class OperatorAssignIn(BaseModel):
    mentor_id: int
    niveles: list[NivelName]

    @field_validator("niveles")
    @classmethod
    def at_least_one(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("Selecciona al menos un nivel")
        return list(dict.fromkeys(v))
