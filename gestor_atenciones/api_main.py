from __future__ import annotations

from datetime import datetime
from functools import lru_cache
from typing import Any, Literal

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile, status
from fastapi.responses import FileResponse, JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel, ConfigDict, Field

from .atenciones import (
    AtencionesExpandidas,
    DatosPaciente,
    SolicitudAtencion,
    actualizar_atencion,
    atenciones_por_fid,
    cancelar_atencion,
    crear_atencion,
    crear_atenciones_lote,
    detalle_paciente,
    eliminar_atencion,
    lista_atenciones_flat,
    marcar_enviadas,
    obtener_atencion,
    resumen_estados,
)
from .auth_models import Usuario
from .auth_security import emitir_token, usuario_id_del_token
from .auth_service import autenticar, crear_usuario, get_usuario_by_id
from .config import Configuracion, cargar_configuracion
from .correo import FuenteInformes, SolicitudEnvioInforme, TransporteCorreo, enviar_informe
from .errores import ErrorDominio, NoEncontrado
from .importacion import leer_planilla
from .logging_config import get_logger, setup_logging
from .seed import seed_base
from .services import (
    actualizar_doctor,
    actualizar_item,
    actualizar_paciente,
    crear_doctor,
    crear_item,
    crear_paciente,
    eliminar_doctor,
    eliminar_item,
    eliminar_paciente,
    init_db,
    lista_doctores_flat,
    lista_items_flat,
    lista_pacientes_flat,
    obtener_doctor,
    obtener_item,
    obtener_paciente,
    paciente_por_fid,
)

logger = get_logger(__name__)

# OAuth2 Bearer (Authorization: Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

app = FastAPI(title="Gestor de Atenciones API", version="1.0.0")


# Configuración y colaboradores externos

@lru_cache
def get_configuracion() -> Configuracion:
    return cargar_configuracion()


def get_transporte(config: Configuracion = Depends(get_configuracion)) -> TransporteCorreo:
    return TransporteCorreo(config.smtp)


def get_fuente_informes(config: Configuracion = Depends(get_configuracion)) -> FuenteInformes:
    return FuenteInformes(config.reports_base_path)


# Startup

@app.on_event("startup")
def startup() -> None:
    config = get_configuracion()
    setup_logging(config.log_level, config.log_file)
    init_db()
    if config.cargar_datos_demo:
        seed_base()
    logger.info("API iniciada")


@app.exception_handler(ErrorDominio)
def error_dominio_handler(request: Request, exc: ErrorDominio) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.mensaje})


# Esquemas Auth

class RegisterIn(BaseModel):
    username: str
    password: str
    role: Literal["admin", "doctor", "technician"] | None = None


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


class MeOut(BaseModel):
    id: str
    username: str
    role: str
    is_active: bool


# Esquemas de dominio

class ContactInfoIn(BaseModel):
    email: str | None = None
    phone: str | None = None


class PacienteIn(BaseModel):
    fid_number: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    lastname: str = Field(..., min_length=1)
    contact_info: ContactInfoIn = ContactInfoIn()


class PacienteUpdateIn(BaseModel):
    name: str | None = None
    lastname: str | None = None
    contact_info: ContactInfoIn | None = None


class DoctorIn(BaseModel):
    full_name: str = Field(..., min_length=1)
    cyclhos_name: str = Field(..., min_length=1)
    fid_number: str | None = None
    contact_info: ContactInfoIn = ContactInfoIn()


class DoctorUpdateIn(BaseModel):
    full_name: str | None = None
    cyclhos_name: str | None = None
    fid_number: str | None = None
    contact_info: ContactInfoIn | None = None


class ItemIn(BaseModel):
    cyclhos_name: str = Field(..., min_length=1)
    mapped_name: str | None = None
    category: Literal["Estudio", "Informe"] | None = None
    file: str | None = None
    number_pdf: int | None = Field(default=None, ge=0)
    sub_items: list[str] | None = None


class ItemUpdateIn(BaseModel):
    cyclhos_name: str | None = None
    mapped_name: str | None = None
    category: Literal["Estudio", "Informe"] | None = None
    file: str | None = None
    number_pdf: int | None = Field(default=None, ge=0)
    sub_items: list[str] | None = None


# Atención diaria: los campos llegan "sueltos" (planilla o formulario);
# la validación de obligatorios la hace el servicio para que el lote registre el error por fila.

class PacienteRefIn(BaseModel):
    fid_number: str | None = None
    name: str | None = None
    lastname: str | None = None
    email: str | None = None
    phone: str | None = None


class DoctorRefIn(BaseModel):
    cyclhos_name: str | None = None


class EstudioRefIn(BaseModel):
    item: str | None = None


class AtencionIn(BaseModel):
    appointment_date: str | None = None  # YYYY-MM-DD
    appointment_time: str | None = None  # HH:mm
    patient: PacienteRefIn | None = None
    doctor: DoctorRefIn | None = None
    study: EstudioRefIn | None = None
    source: Literal["excel", "manual"] | None = None

    def to_solicitud(self) -> SolicitudAtencion:
        p = self.patient
        return SolicitudAtencion(
            appointment_date=self.appointment_date,
            appointment_time=self.appointment_time,
            patient=DatosPaciente(
                fid_number=p.fid_number, name=p.name, lastname=p.lastname, email=p.email, phone=p.phone
            ) if p else None,
            doctor_name=self.doctor.cyclhos_name if self.doctor else None,
            study_name=self.study.item if self.study else None,
            source=self.source,
        )


class EmailStatusIn(BaseModel):
    sent: bool | None = None
    sent_time: datetime | None = None


class AtencionUpdateIn(BaseModel):
    appointment_date: str | None = None
    appointment_time: str | None = None
    doctor_id: str | None = None
    item_id: str | None = None
    completed: bool | None = None
    result_urls: list[str] | None = None
    email_status: EmailStatusIn | None = None
    source: Literal["excel", "manual"] | None = None


class MarcarEnviadasIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    attention_ids: list[str] = Field(default_factory=list, alias="attentionIds")
    report_paths: list[str] = Field(default_factory=list, alias="reportPaths")


class EnvioInformeIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cedula: str
    nombre: str
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    telefono: str | None = None
    servicios: list[str] = Field(default_factory=list)
    asunto: str
    cuerpo: str
    report_paths: list[str] = Field(..., min_length=1, alias="reportPaths")
    attention_ids: list[str] = Field(default_factory=list, alias="attentionIds")


def _contacto(payload: dict[str, Any]) -> dict[str, Any]:
    """Aplana contact_info -> email/phone para los servicios."""
    contacto = payload.pop("contact_info", None) or {}
    payload.update({k: v for k, v in contacto.items() if v is not None})
    return payload


# Dependencias auth

def get_current_user(token: str = Depends(oauth2_scheme)) -> Usuario:
    user_id = usuario_id_del_token(token)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token inválido")

    u = get_usuario_by_id(user_id)
    if not u or not u.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Usuario inválido")
    return u


# AUTH endpoints

@app.post("/api/auth/register", response_model=dict)
def register(payload: RegisterIn) -> dict[str, Any]:
    user_id = crear_usuario(payload.username, payload.password, payload.role)
    return {"ok": True, "user_id": user_id}


@app.post("/api/auth/login", response_model=TokenOut)
def login(form: OAuth2PasswordRequestForm = Depends()) -> TokenOut:
    u = autenticar(form.username, form.password)
    if not u:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Credenciales inválidas")

    return TokenOut(access_token=emitir_token(u))


@app.get("/api/me", response_model=MeOut)
def me(user: Usuario = Depends(get_current_user)) -> MeOut:
    return MeOut(id=user.id, username=user.username, role=user.role.value, is_active=user.is_active)


# Pacientes

@app.get("/api/patients")
def api_pacientes(user: Usuario = Depends(get_current_user)) -> list[dict]:
    return lista_pacientes_flat()


@app.post("/api/patients", status_code=status.HTTP_201_CREATED)
def api_crear_paciente(payload: PacienteIn, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return crear_paciente(**_contacto(payload.model_dump()))


@app.get("/api/patients/fid/{fid_number}")
def api_paciente_por_fid(fid_number: str, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return paciente_por_fid(fid_number)


@app.get("/api/patients/{paciente_id}")
def api_paciente(paciente_id: str, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return obtener_paciente(paciente_id)


@app.patch("/api/patients/{paciente_id}")
def api_actualizar_paciente(
    paciente_id: str, payload: PacienteUpdateIn, user: Usuario = Depends(get_current_user)
) -> dict[str, Any]:
    return actualizar_paciente(paciente_id, _contacto(payload.model_dump(exclude_unset=True)))


@app.delete("/api/patients/{paciente_id}")
def api_eliminar_paciente(paciente_id: str, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return eliminar_paciente(paciente_id)


# Doctores

@app.get("/api/doctors")
def api_doctores(user: Usuario = Depends(get_current_user)) -> list[dict]:
    return lista_doctores_flat()


@app.post("/api/doctors", status_code=status.HTTP_201_CREATED)
def api_crear_doctor(payload: DoctorIn, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return crear_doctor(**_contacto(payload.model_dump()))


@app.get("/api/doctors/{doctor_id}")
def api_doctor(doctor_id: str, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return obtener_doctor(doctor_id)


@app.patch("/api/doctors/{doctor_id}")
def api_actualizar_doctor(
    doctor_id: str, payload: DoctorUpdateIn, user: Usuario = Depends(get_current_user)
) -> dict[str, Any]:
    return actualizar_doctor(doctor_id, _contacto(payload.model_dump(exclude_unset=True)))


@app.delete("/api/doctors/{doctor_id}")
def api_eliminar_doctor(doctor_id: str, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return eliminar_doctor(doctor_id)


# Items

@app.get("/api/items")
def api_items(user: Usuario = Depends(get_current_user)) -> list[dict]:
    return lista_items_flat()


@app.post("/api/items", status_code=status.HTTP_201_CREATED)
def api_crear_item(payload: ItemIn, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return crear_item(**payload.model_dump())


@app.get("/api/items/{item_pk}")
def api_item(item_pk: str, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return obtener_item(item_pk)


@app.patch("/api/items/{item_pk}")
def api_actualizar_item(
    item_pk: str, payload: ItemUpdateIn, user: Usuario = Depends(get_current_user)
) -> dict[str, Any]:
    return actualizar_item(item_pk, payload.model_dump(exclude_unset=True))


@app.delete("/api/items/{item_pk}")
def api_eliminar_item(item_pk: str, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return eliminar_item(item_pk)


# Atenciones diarias

@app.post("/api/daily-patients", status_code=status.HTTP_201_CREATED)
def api_crear_atencion(payload: AtencionIn, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    resultado = crear_atencion(payload.to_solicitud())
    if isinstance(resultado, AtencionesExpandidas):
        return {"kind": "expanded", "appointments": resultado.atenciones}
    return {"kind": "single", "appointment": resultado.atencion}


@app.post("/api/daily-patients/batch")
def api_crear_atenciones_lote(
    payload: list[AtencionIn], user: Usuario = Depends(get_current_user)
) -> dict[str, Any]:
    return crear_atenciones_lote([p.to_solicitud() for p in payload]).as_dict()


@app.post("/api/daily-patients/import")
def api_importar_planilla(
    file: UploadFile = File(..., description="Planilla diaria .xlsx"),
    user: Usuario = Depends(get_current_user),
) -> dict[str, Any]:
    if not file.filename or not file.filename.endswith(".xlsx"):
        raise HTTPException(status_code=400, detail="El archivo debe ser un Excel (.xlsx)")
    return crear_atenciones_lote(leer_planilla(file.file.read())).as_dict()


@app.get("/api/daily-patients")
def api_atenciones(user: Usuario = Depends(get_current_user)) -> list[dict]:
    return lista_atenciones_flat()


@app.get("/api/daily-patients/summary")
def api_resumen(user: Usuario = Depends(get_current_user)) -> list[dict]:
    return resumen_estados()


@app.get("/api/daily-patients/summary/{patient_id}")
def api_detalle_paciente(patient_id: str, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return detalle_paciente(patient_id)


@app.get("/api/daily-patients/fid/{fid_number}")
def api_atenciones_por_fid(fid_number: str, user: Usuario = Depends(get_current_user)) -> list[dict]:
    return atenciones_por_fid(fid_number)


@app.post("/api/daily-patients/mark-emailed")
def api_marcar_enviadas(payload: MarcarEnviadasIn, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    marcar_enviadas(payload.attention_ids, payload.report_paths)
    return {"ok": True}


@app.get("/api/daily-patients/{atencion_id}")
def api_atencion(atencion_id: str, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return obtener_atencion(atencion_id)


@app.patch("/api/daily-patients/{atencion_id}")
def api_actualizar_atencion(
    atencion_id: str, payload: AtencionUpdateIn, user: Usuario = Depends(get_current_user)
) -> dict[str, Any]:
    return actualizar_atencion(atencion_id, payload.model_dump(exclude_unset=True))


@app.patch("/api/daily-patients/{atencion_id}/cancel")
def api_cancelar_atencion(atencion_id: str, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    return cancelar_atencion(atencion_id, user.id)


@app.delete("/api/daily-patients/{atencion_id}")
def api_eliminar_atencion(atencion_id: str, user: Usuario = Depends(get_current_user)) -> dict[str, Any]:
    if not eliminar_atencion(atencion_id):
        raise NoEncontrado(f"Registro diario con ID {atencion_id} no encontrado")
    return {"ok": True}


# Técnico: envío de informes por correo

@app.post("/api/technician/send-with-file")
def api_enviar_informe(
    payload: EnvioInformeIn,
    user: Usuario = Depends(get_current_user),
    transporte: TransporteCorreo = Depends(get_transporte),
    fuente: FuenteInformes = Depends(get_fuente_informes),
) -> dict[str, Any]:
    message_id = enviar_informe(
        SolicitudEnvioInforme(
            cedula=payload.cedula,
            nombre=payload.nombre,
            email=payload.email,
            telefono=payload.telefono,
            servicios=tuple(payload.servicios),
            asunto=payload.asunto,
            cuerpo=payload.cuerpo,
            report_paths=payload.report_paths,
            attention_ids=payload.attention_ids,
        ),
        transporte,
        fuente,
    )
    return {"ok": True, "message_id": message_id}


# Informes (archivos)

@app.get("/api/reports/{ruta:path}")
def api_informe(
    ruta: str,
    user: Usuario = Depends(get_current_user),
    fuente: FuenteInformes = Depends(get_fuente_informes),
) -> FileResponse:
    if fuente.base is None:
        raise NoEncontrado("Ruta base de informes no configurada")
    archivo = fuente.resolver(ruta)
    if archivo is None:
        raise NoEncontrado(f"Archivo de informe no encontrado: {fuente.sanear(ruta)}")
    return FileResponse(archivo)
