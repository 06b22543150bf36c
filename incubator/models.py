from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "usuarios"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    nombres: Mapped[str] = mapped_column(String(200), default="")
    apellidos: Mapped[str] = mapped_column(String(200), default="")
    email: Mapped[str] = mapped_column(String(300), default="")
    celular: Mapped[str] = mapped_column(String(50), default="")
    tipo_documento: Mapped[str] = mapped_column(String(50), default="")
    numero_identificacion: Mapped[str] = mapped_column(String(50), default="")
    genero: Mapped[str] = mapped_column(String(50), default="")
    direccion: Mapped[str] = mapped_column(String(300), default="")
    ano_nacimiento: Mapped[str] = mapped_column(String(10), default="")
    identificacion_etnica: Mapped[str] = mapped_column(String(100), default="")
    biografia: Mapped[str] = mapped_column(Text, default="")
    nivel_ingles: Mapped[str] = mapped_column(String(50), default="")
    menor_de_edad: Mapped[bool] = mapped_column(Boolean, default=False)
    departamento: Mapped[str] = mapped_column(String(100), default="")
    municipio: Mapped[str] = mapped_column(String(100), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    roles: Mapped[list[UserRole]] = relationship("UserRole", back_populates="user", cascade="all, delete-orphan")
    emprendimiento: Mapped[Entrepreneurship | None] = relationship(
        "Entrepreneurship", back_populates="user", uselist=False,
    )
    autorizacion: Mapped[Authorization | None] = relationship(
        "Authorization", back_populates="user", uselist=False, cascade="all, delete-orphan",
    )
    acudiente: Mapped[Guardian | None] = relationship(
        "Guardian", back_populates="menor", uselist=False, cascade="all, delete-orphan",
    )


class UserRole(Base):
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("usuarios.id"), nullable=False)
    role: Mapped[str] = mapped_column(String(30), nullable=False)  # admin | mentor | beneficiario | operador

    user: Mapped[User] = relationship("User", back_populates="roles")


class Authorization(Base):
    __tablename__ = "autorizaciones"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("usuarios.id"), nullable=False, unique=True)
    tratamiento_datos: Mapped[bool] = mapped_column(Boolean, default=False)
    datos_sensibles: Mapped[bool] = mapped_column(Boolean, default=False)
    correo: Mapped[bool] = mapped_column(Boolean, default=False)
    celular: Mapped[bool] = mapped_column(Boolean, default=False)

    user: Mapped[User] = relationship("User", back_populates="autorizacion")


class Guardian(Base):
    __tablename__ = "acudientes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    menor_id: Mapped[int] = mapped_column(Integer, ForeignKey("usuarios.id"), nullable=False, unique=True)
    nombres: Mapped[str] = mapped_column(String(200), default="")
    apellidos: Mapped[str] = mapped_column(String(200), default="")
    relacion_con_menor: Mapped[str] = mapped_column(String(100), default="")
    email: Mapped[str] = mapped_column(String(300), default="")
    celular: Mapped[str] = mapped_column(String(50), default="")
    tipo_documento: Mapped[str] = mapped_column(String(50), default="")
    numero_identificacion: Mapped[str] = mapped_column(String(50), default="")

    menor: Mapped[User] = relationship("User", back_populates="acudiente")


class Entrepreneurship(Base):
    __tablename__ = "emprendimientos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("usuarios.id"), nullable=False, unique=True)
    nombre: Mapped[str] = mapped_column(String(300), nullable=False)
    descripcion: Mapped[str] = mapped_column(Text, default="")
    categoria: Mapped[str] = mapped_column(String(100), default="")
    etapa: Mapped[str] = mapped_column(String(100), default="")
    nivel_definitivo: Mapped[str] = mapped_column(String(20), default="")
    industria_vertical: Mapped[str] = mapped_column(String(200), default="")
    alcance_mercado: Mapped[str] = mapped_column(String(100), default="")
    tipo_cliente: Mapped[str] = mapped_column(String(100), default="")
    pagina_web: Mapped[str] = mapped_column(String(500), default="")
    ano_fundacion: Mapped[str] = mapped_column(String(10), default="")
    ventas_ultimo_ano: Mapped[str] = mapped_column(String(100), default="")
    nivel_innovacion: Mapped[str] = mapped_column(String(100), default="")
    integracion_tecnologia: Mapped[str] = mapped_column(String(100), default="")
    plan_negocios: Mapped[str] = mapped_column(String(100), default="")
    formalizacion: Mapped[bool] = mapped_column(Boolean, default=False)
    estado_unidad_productiva: Mapped[str] = mapped_column(String(100), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    user: Mapped[User] = relationship("User", back_populates="emprendimiento")
    equipo: Mapped[Team | None] = relationship(
        "Team", back_populates="emprendimiento", uselist=False, cascade="all, delete-orphan",
    )
    financiamiento: Mapped[Financing | None] = relationship(
        "Financing", back_populates="emprendimiento", uselist=False, cascade="all, delete-orphan",
    )
    proyecciones: Mapped[Projection | None] = relationship(
        "Projection", back_populates="emprendimiento", uselist=False, cascade="all, delete-orphan",
    )
    diagnostico: Mapped[Diagnostic | None] = relationship(
        "Diagnostic", back_populates="emprendimiento", uselist=False, cascade="all, delete-orphan",
    )
    evaluaciones: Mapped[list[Evaluation]] = relationship(
        "Evaluation", back_populates="emprendimiento", cascade="all, delete-orphan",
    )
    cupos: Mapped[list[QuotaAssignment]] = relationship(
        "QuotaAssignment", back_populates="emprendimiento", cascade="all, delete-orphan",
    )


class Team(Base):
    __tablename__ = "equipos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    emprendimiento_id: Mapped[int] = mapped_column(Integer, ForeignKey("emprendimientos.id"), nullable=False, unique=True)
    equipo_total: Mapped[int] = mapped_column(Integer, default=0)
    personas_full_time: Mapped[int] = mapped_column(Integer, default=0)
    fundadoras: Mapped[int] = mapped_column(Integer, default=0)
    colaboradoras: Mapped[int] = mapped_column(Integer, default=0)
    colaboradores_jovenes: Mapped[int] = mapped_column(Integer, default=0)
    equipo_tecnico: Mapped[bool] = mapped_column(Boolean, default=False)
    organigrama: Mapped[str] = mapped_column(String(100), default="")
    tipo_decisiones: Mapped[str] = mapped_column(String(100), default="")

    emprendimiento: Mapped[Entrepreneurship] = relationship("Entrepreneurship", back_populates="equipo")


class Financing(Base):
    __tablename__ = "financiamientos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    emprendimiento_id: Mapped[int] = mapped_column(Integer, ForeignKey("emprendimientos.id"), nullable=False, unique=True)
    busca_financiamiento: Mapped[str] = mapped_column(String(100), default="")
    monto_buscado: Mapped[str] = mapped_column(String(100), default="")
    financiamiento_previo: Mapped[bool] = mapped_column(Boolean, default=False)
    monto_recibido: Mapped[str] = mapped_column(String(100), default="")
    tipo_actor: Mapped[str] = mapped_column(String(100), default="")
    tipo_inversion: Mapped[str] = mapped_column(String(100), default="")
    etapa: Mapped[str] = mapped_column(String(100), default="")

    emprendimiento: Mapped[Entrepreneurship] = relationship("Entrepreneurship", back_populates="financiamiento")


class Projection(Base):
    __tablename__ = "proyecciones"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    emprendimiento_id: Mapped[int] = mapped_column(Integer, ForeignKey("emprendimientos.id"), nullable=False, unique=True)
    principales_objetivos: Mapped[str] = mapped_column(Text, default="")
    desafios: Mapped[str] = mapped_column(Text, default="")
    impacto: Mapped[str] = mapped_column(Text, default="")
    acciones_crecimiento: Mapped[str] = mapped_column(Text, default="")
    decisiones_acciones_crecimiento: Mapped[bool] = mapped_column(Boolean, default=False)
    intencion_internacionalizacion: Mapped[bool] = mapped_column(Boolean, default=False)

    emprendimiento: Mapped[Entrepreneurship] = relationship("Entrepreneurship", back_populates="proyecciones")


class Diagnostic(Base):
    __tablename__ = "diagnosticos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    emprendimiento_id: Mapped[int] = mapped_column(Integer, ForeignKey("emprendimientos.id"), nullable=False, unique=True)
    contenido: Mapped[str] = mapped_column(Text, default="")
    visible_para_usuario: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    emprendimiento: Mapped[Entrepreneurship] = relationship("Entrepreneurship", back_populates="diagnostico")


class Evaluation(Base):
    __tablename__ = "evaluaciones"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    emprendimiento_id: Mapped[int] = mapped_column(Integer, ForeignKey("emprendimientos.id"), nullable=False)
    mentor_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("usuarios.id"), nullable=True)
    tipo_evaluacion: Mapped[str] = mapped_column(String(20), nullable=False)  # ccc | jurado
    evaluacion_base_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("evaluaciones.id"), nullable=True)
    estado: Mapped[str] = mapped_column(String(20), default="borrador")  # borrador | enviada
    puede_editar: Mapped[bool] = mapped_column(Boolean, default=True)
    visible_para_usuario: Mapped[bool] = mapped_column(Boolean, default=False)
    nivel: Mapped[str] = mapped_column(String(20), default="")

    puntaje_impacto: Mapped[float] = mapped_column(Float, default=0)
    puntaje_equipo: Mapped[float] = mapped_column(Float, default=0)
    puntaje_innovacion_tecnologia: Mapped[float] = mapped_column(Float, default=0)
    puntaje_ventas: Mapped[float] = mapped_column(Float, default=0)
    puntaje_proyeccion_financiacion: Mapped[float] = mapped_column(Float, default=0)
    puntaje_referido_regional: Mapped[float] = mapped_column(Float, default=0)
    puntaje: Mapped[float | None] = mapped_column(Float, nullable=True)

    impacto_texto: Mapped[str] = mapped_column(Text, default="")
    equipo_texto: Mapped[str] = mapped_column(Text, default="")
    innovacion_tecnologia_texto: Mapped[str] = mapped_column(Text, default="")
    ventas_texto: Mapped[str] = mapped_column(Text, default="")
    proyeccion_financiacion_texto: Mapped[str] = mapped_column(Text, default="")
    referido_regional: Mapped[str] = mapped_column(String(100), default="")
    comentarios_adicionales: Mapped[str] = mapped_column(Text, default="")

    cumple_ubicacion: Mapped[bool] = mapped_column(Boolean, default=True)
    cumple_equipo_minimo: Mapped[bool] = mapped_column(Boolean, default=False)
    cumple_dedicacion: Mapped[bool] = mapped_column(Boolean, default=False)
    cumple_interes: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    emprendimiento: Mapped[Entrepreneurship] = relationship("Entrepreneurship", back_populates="evaluaciones")


class QuotaAssignment(Base):
    __tablename__ = "asignacion_cupos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    emprendimiento_id: Mapped[int] = mapped_column(Integer, ForeignKey("emprendimientos.id"), nullable=False)
    nivel: Mapped[str] = mapped_column(String(20), nullable=False)  # Starter | Growth | Scale
    cohorte: Mapped[int] = mapped_column(Integer, default=1)
    estado: Mapped[str] = mapped_column(String(20), default="pendiente")  # pendiente | aprobado | rechazado
    aprobado_por: Mapped[int | None] = mapped_column(Integer, ForeignKey("usuarios.id"), nullable=True)
    notas: Mapped[str] = mapped_column(Text, default="")
    fecha_asignacion: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    emprendimiento: Mapped[Entrepreneurship] = relationship("Entrepreneurship", back_populates="cupos")


class MentorAssignment(Base):
    __tablename__ = "mentor_emprendimiento_assignments"
    __table_args__ = (UniqueConstraint("mentor_id", "emprendimiento_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mentor_id: Mapped[int] = mapped_column(Integer, ForeignKey("usuarios.id"), nullable=False)
    emprendimiento_id: Mapped[int] = mapped_column(Integer, ForeignKey("emprendimientos.id"), nullable=False)
    es_jurado: Mapped[bool] = mapped_column(Boolean, default=False)
    activo: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class Module(Base):
    __tablename__ = "modulos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    titulo: Mapped[str] = mapped_column(String(300), nullable=False)
    descripcion: Mapped[str] = mapped_column(Text, default="")
    duracion: Mapped[str] = mapped_column(String(100), default="")
    orden: Mapped[int] = mapped_column(Integer, default=0)
    activo: Mapped[bool] = mapped_column(Boolean, default=True)
    imagen_url: Mapped[str] = mapped_column(String(500), default="")
    nivel: Mapped[str] = mapped_column(String(20), default="Starter")  # Starter | Growth | Scale
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    clases: Mapped[list[LabClass]] = relationship(
        "LabClass", back_populates="modulo", cascade="all, delete-orphan", order_by="LabClass.orden",
    )
    tareas: Mapped[list[Task]] = relationship("Task", back_populates="modulo", cascade="all, delete-orphan")


class LabClass(Base):
    __tablename__ = "clases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    modulo_id: Mapped[int] = mapped_column(Integer, ForeignKey("modulos.id"), nullable=False)
    titulo: Mapped[str] = mapped_column(String(300), nullable=False)
    descripcion: Mapped[str] = mapped_column(Text, default="")
    contenido: Mapped[str] = mapped_column(Text, default="")
    video_url: Mapped[str] = mapped_column(String(500), default="")
    duracion_minutos: Mapped[int] = mapped_column(Integer, default=0)
    orden: Mapped[int] = mapped_column(Integer, default=0)
    recursos_json: Mapped[str] = mapped_column(Text, default="[]")  # list of URLs

    modulo: Mapped[Module] = relationship("Module", back_populates="clases")
    progreso: Mapped[list[ClassProgress]] = relationship(
        "ClassProgress", back_populates="clase", cascade="all, delete-orphan",
    )


class ClassProgress(Base):
    __tablename__ = "progreso_usuario"
    __table_args__ = (UniqueConstraint("user_id", "clase_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("usuarios.id"), nullable=False)
    clase_id: Mapped[int] = mapped_column(Integer, ForeignKey("clases.id"), nullable=False)
    completado: Mapped[bool] = mapped_column(Boolean, default=False)
    progreso_porcentaje: Mapped[int] = mapped_column(Integer, default=0)
    ultima_actualizacion: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    clase: Mapped[LabClass] = relationship("LabClass", back_populates="progreso")


class Task(Base):
    __tablename__ = "tareas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    modulo_id: Mapped[int] = mapped_column(Integer, ForeignKey("modulos.id"), nullable=False)
    titulo: Mapped[str] = mapped_column(String(300), nullable=False)
    descripcion: Mapped[str] = mapped_column(Text, default="")
    fecha_limite: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    num_documentos: Mapped[int] = mapped_column(Integer, default=1)
    documentos_obligatorios: Mapped[bool] = mapped_column(Boolean, default=False)

    modulo: Mapped[Module] = relationship("Module", back_populates="tareas")
    entregas: Mapped[list[Submission]] = relationship("Submission", back_populates="tarea", cascade="all, delete-orphan")


class Submission(Base):
    __tablename__ = "entregas"
    __table_args__ = (UniqueConstraint("tarea_id", "user_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tarea_id: Mapped[int] = mapped_column(Integer, ForeignKey("tareas.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("usuarios.id"), nullable=False)
    comentario: Mapped[str] = mapped_column(Text, default="")
    archivos_json: Mapped[str] = mapped_column(Text, default="[]")  # [{"name": ..., "path": ...}]
    estado: Mapped[str] = mapped_column(String(20), default="entregado")  # entregado | revisado | aprobado | rechazado
    feedback: Mapped[str] = mapped_column(Text, default="")
    nota: Mapped[float | None] = mapped_column(Float, nullable=True)
    fecha_entrega: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    tarea: Mapped[Task] = relationship("Task", back_populates="entregas")


class AdvisoryProfile(Base):
    __tablename__ = "perfiles_asesoria"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mentor_id: Mapped[int] = mapped_column(Integer, ForeignKey("usuarios.id"), nullable=False)
    titulo: Mapped[str] = mapped_column(String(300), nullable=False)
    descripcion: Mapped[str] = mapped_column(Text, default="")
    duracion_minutos: Mapped[int] = mapped_column(Integer, default=60)
    link_calendario_externo: Mapped[str] = mapped_column(String(500), default="")
    activo: Mapped[bool] = mapped_column(Boolean, default=True)


class Booking(Base):
    __tablename__ = "reservas_asesoria"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    perfil_asesoria_id: Mapped[int] = mapped_column(Integer, ForeignKey("perfiles_asesoria.id"), nullable=False)
    beneficiario_id: Mapped[int] = mapped_column(Integer, ForeignKey("usuarios.id"), nullable=False)
    mentor_id: Mapped[int] = mapped_column(Integer, ForeignKey("usuarios.id"), nullable=False)
    fecha_reserva: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    estado: Mapped[str] = mapped_column(String(20), default="pendiente")
    tipo_reserva: Mapped[str] = mapped_column(String(30), default="normal")  # normal | calendario_externo
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class MentorAvailability(Base):
    __tablename__ = "disponibilidades_mentor"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mentor_id: Mapped[int] = mapped_column(Integer, ForeignKey("usuarios.id"), nullable=False)
    dia_semana: Mapped[int] = mapped_column(Integer, nullable=False)  # 0 = Domingo .. 6 = Sábado
    hora_inicio: Mapped[str] = mapped_column(String(5), nullable=False)  # HH:MM
    hora_fin: Mapped[str] = mapped_column(String(5), nullable=False)


class OperatorLevel(Base):
    __tablename__ = "mentor_operadores"
    __table_args__ = (UniqueConstraint("mentor_id", "nivel"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mentor_id: Mapped[int] = mapped_column(Integer, ForeignKey("usuarios.id"), nullable=False)
    nivel: Mapped[str] = mapped_column(String(20), nullable=False)
    activo: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
