"""
Motor de atenciones diarias.

Flujo de creación: resolución de referencias (paciente/doctor/estudio a partir
de texto libre) -> expansión de combos (una atención por subitem) -> control de
duplicados -> escritura. La carga por lote aplica el mismo flujo fila a fila.

Lectura: resumen de estado de envío por paciente (calculado en cada llamada) y
detalle de un paciente. Tras un envío de correo, marcar_enviadas propaga el
estado 'completed' cuando todas las atenciones del paciente tienen resultado y
correo enviado.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, Sequence, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import db_session
from .errores import Conflicto, DatosIncompletos, NoEncontrado
from .logging_config import get_logger
from .models import AtencionDiaria, Doctor, FuenteAtencion, Item, Paciente, ahora
from .services import insertar_paciente

logger = get_logger(__name__)


# =========================
# Tipos de petición / respuesta
# =========================
@dataclass(frozen=True)
class DatosPaciente:
    fid_number: str | None
    name: str | None = None
    lastname: str | None = None
    email: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class SolicitudAtencion:
    appointment_date: str | None
    appointment_time: str | None
    patient: DatosPaciente | None
    doctor_name: str | None
    study_name: str | None
    source: str | None = None

    @property
    def fid_number(self) -> str | None:
        return self.patient.fid_number if self.patient else None


@dataclass(frozen=True)
class AtencionUnica:
    """Item simple: una sola atención."""
    atencion: dict[str, Any]

    @property
    def atenciones(self) -> list[dict[str, Any]]:
        return [self.atencion]


@dataclass(frozen=True)
class AtencionesExpandidas:
    """Item combo: una atención por subitem, en el orden del combo."""
    atenciones: list[dict[str, Any]]


ResultadoCreacion = Union[AtencionUnica, AtencionesExpandidas]


@dataclass
class ResultadoLote:
    created_records: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def created_count(self) -> int:
        return len(self.created_records)

    @property
    def errors_count(self) -> int:
        return len(self.errors)

    def as_dict(self) -> dict[str, Any]:
        return {
            "createdCount": self.created_count,
            "errorsCount": self.errors_count,
            "createdRecords": self.created_records,
            "errors": self.errors,
        }


class EstadoEnvio(str, enum.Enum):
    SENT = "sent"
    PENDING = "pending"
    NOT_SENT = "not_sent"


@dataclass(frozen=True)
class Referencias:
    paciente: Paciente
    doctor: Doctor
    item: Item


# =========================
# Serialización
# =========================
_MESES = (
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
)


def fecha_larga(valor: str) -> str:
    """'2025-10-27' -> '27 de octubre de 2025'; si no es ISO se devuelve tal cual."""
    try:
        d = date.fromisoformat(valor)
    except (TypeError, ValueError):
        return valor
    return f"{d.day:02d} de {_MESES[d.month - 1]} de {d.year}"


def atencion_flat(a: AtencionDiaria) -> dict[str, Any]:
    return {
        "id": a.id,
        "appointment_date": a.appointment_date,
        "appointment_time": a.appointment_time,
        "patient_id": a.patient_id,
        "doctor_id": a.doctor_id,
        "item_id": a.item_id,
        "completed": a.completed,
        "result_urls": list(a.result_urls or []),
        "email_status": {
            "sent": a.email_sent,
            "sent_time": a.email_sent_time.isoformat() if a.email_sent_time else None,
        },
        "cancelled_id": a.cancelled_by_id,
        "metadata": {
            "source": a.source.value,
            "created_at": a.created_at.isoformat() if a.created_at else None,
            "updated_at": a.updated_at.isoformat() if a.updated_at else None,
        },
    }


def atencion_detalle(a: AtencionDiaria) -> dict[str, Any]:
    """Versión con paciente, doctor e item poblados (requiere sesión abierta)."""
    data = atencion_flat(a)
    data["patient"] = {
        "id": a.paciente.id,
        "fid_number": a.paciente.fid_number,
        "name": a.paciente.name,
        "lastname": a.paciente.lastname,
        "contact_info": {"email": a.paciente.email, "phone": a.paciente.phone},
    }
    data["doctor"] = {"id": a.doctor.id, "full_name": a.doctor.full_name, "cyclhos_name": a.doctor.cyclhos_name}
    data["item"] = {
        "id": a.item.id,
        "cyclhos_name": a.item.cyclhos_name,
        "mapped_name": a.item.mapped_name,
        "category": a.item.category.value,
    }
    return data


# =========================
# Resolución de referencias
# =========================
def _normalizar(valor: str | None) -> str:
    return (valor or "").strip().casefold()


def _coincide(objetivo: str, *campos: str | None) -> bool:
    return any(_normalizar(c) == objetivo for c in campos)


def buscar_doctor(s: Session, nombre: str) -> Doctor:
    """
    Coincidencia exacta sin distinguir mayúsculas contra cyclhos_name o full_name.
    Con varios candidatos gana el primero en orden de inserción.
    """
    objetivo = _normalizar(nombre)
    for d in s.scalars(select(Doctor).order_by(Doctor.created_at, Doctor.id)):
        if _coincide(objetivo, d.cyclhos_name, d.full_name):
            return d
    raise NoEncontrado(f'Doctor con nombre "{nombre}" no encontrado')


def buscar_item(s: Session, nombre: str) -> Item:
    """Igual que buscar_doctor, contra cyclhos_name, mapped_name o category."""
    objetivo = _normalizar(nombre)
    for i in s.scalars(select(Item).order_by(Item.created_at, Item.item_id)):
        if _coincide(objetivo, i.cyclhos_name, i.mapped_name, i.category.value):
            return i
    raise NoEncontrado(f'Estudio "{nombre}" no encontrado')


def _resolver_paciente(s: Session, datos: DatosPaciente) -> Paciente:
    fid = datos.fid_number.strip()
    paciente = s.scalar(select(Paciente).where(Paciente.fid_number == fid))
    if paciente:
        return paciente

    try:
        paciente = insertar_paciente(s, fid, datos.name or "", datos.lastname or "", datos.email, datos.phone)
        logger.info("Paciente %s creado al registrar su atención", fid)
    except Conflicto:
        # otro request lo creó entre la consulta y el insert: se relee.
        # El paciente se resuelve antes que cualquier escritura de la unidad de trabajo,
        # así que el rollback no descarta nada pendiente.
        s.rollback()
        paciente = s.scalar(select(Paciente).where(Paciente.fid_number == fid))

    if not paciente:
        raise NoEncontrado(f"Paciente con FID {fid} no encontrado después de crearlo")
    return paciente


def resolver_referencias(s: Session, solicitud: SolicitudAtencion) -> Referencias:
    faltantes = [
        nombre
        for nombre, valor in (
            ("patient.fid_number", solicitud.fid_number),
            ("doctor", solicitud.doctor_name),
            ("study", solicitud.study_name),
            ("appointment_date", solicitud.appointment_date),
            ("appointment_time", solicitud.appointment_time),
        )
        if not (valor or "").strip()
    ]
    if faltantes:
        raise DatosIncompletos(f"Datos incompletos en la petición: {', '.join(faltantes)}")

    paciente = _resolver_paciente(s, solicitud.patient)
    doctor = buscar_doctor(s, solicitud.doctor_name)
    item = buscar_item(s, solicitud.study_name)
    return Referencias(paciente=paciente, doctor=doctor, item=item)


# =========================
# Expansión de combos + control de duplicados
# =========================
def expandir_combo(s: Session, item: Item) -> list[Item]:
    """
    Items destino de las atenciones: los subitems de un combo o el propio item.
    Se validan todos los subitems antes de escribir nada.
    """
    if not item.es_combo:
        return [item]

    subitems: list[Item] = []
    for sub_id in item.sub_items:
        sub = s.get(Item, sub_id)
        if sub is None:
            raise NoEncontrado(f"Subitem referenciado en sub_items no encontrado: {sub_id}")
        subitems.append(sub)
    return subitems


def buscar_duplicado(
    s: Session, patient_id: str, doctor_id: str, item_id: str, fecha: str, hora: str
) -> AtencionDiaria | None:
    q = (
        select(AtencionDiaria)
        .where(
            AtencionDiaria.patient_id == patient_id,
            AtencionDiaria.doctor_id == doctor_id,
            AtencionDiaria.item_id == item_id,
            AtencionDiaria.appointment_date == fecha,
            AtencionDiaria.appointment_time == hora,
        )
        .order_by(AtencionDiaria.created_at)
        .limit(1)
    )
    return s.scalars(q).first()


def _fuente(valor: str | None) -> FuenteAtencion:
    try:
        return FuenteAtencion(valor) if valor else FuenteAtencion.EXCEL
    except ValueError:
        raise DatosIncompletos(f"source inválido: {valor!r} (excel | manual)") from None


def _obtener_o_crear(s: Session, refs: Referencias, item: Item, solicitud: SolicitudAtencion) -> AtencionDiaria:
    fecha = solicitud.appointment_date.strip()
    hora = solicitud.appointment_time.strip()

    existente = buscar_duplicado(s, refs.paciente.id, refs.doctor.id, item.id, fecha, hora)
    if existente:
        logger.info("Atención ya registrada (%s %s, item %s), se reutiliza %s", fecha, hora, item.item_id, existente.id)
        return existente

    atencion = AtencionDiaria(
        appointment_date=fecha,
        appointment_time=hora,
        patient_id=refs.paciente.id,
        doctor_id=refs.doctor.id,
        item_id=item.id,
        completed=False,
        result_urls=[],
        email_sent=False,
        email_sent_time=None,
        cancelled_by_id=None,
        source=_fuente(solicitud.source),
    )
    s.add(atencion)
    # autoflush desactivado: el siguiente subitem del combo debe ver esta fila
    s.flush()
    return atencion


def registrar_atencion(s: Session, solicitud: SolicitudAtencion) -> ResultadoCreacion:
    refs = resolver_referencias(s, solicitud)
    destinos = expandir_combo(s, refs.item)
    filas = [atencion_flat(_obtener_o_crear(s, refs, it, solicitud)) for it in destinos]

    if refs.item.es_combo:
        return AtencionesExpandidas(atenciones=filas)
    return AtencionUnica(atencion=filas[0])


def crear_atencion(solicitud: SolicitudAtencion) -> ResultadoCreacion:
    with db_session() as s:
        return registrar_atencion(s, solicitud)


def crear_atenciones_lote(solicitudes: Iterable[SolicitudAtencion]) -> ResultadoLote:
    """
    Carga masiva best-effort: cada fila en su propia unidad de trabajo;
    un error se registra y no interrumpe las filas siguientes.
    """
    resultado = ResultadoLote()
    for solicitud in solicitudes:
        try:
            creado = crear_atencion(solicitud)
        except Exception as e:
            logger.warning("Fila con FID %s rechazada: %s", solicitud.fid_number, e)
            resultado.errors.append({"fid_number": solicitud.fid_number, "error": str(e) or "Error desconocido"})
            continue

        for a in creado.atenciones:
            resultado.created_records.append(
                {
                    "fid_number": solicitud.fid_number,
                    "appointment_date": a["appointment_date"],
                    "appointment_time": a["appointment_time"],
                    "id": a["id"],
                }
            )

    logger.info("Carga por lote: %d atenciones, %d errores", resultado.created_count, resultado.errors_count)
    return resultado


# =========================
# Resumen de estado por paciente
# =========================
def clasificar_estado(atenciones: Sequence[AtencionDiaria]) -> EstadoEnvio:
    """
    Primera regla que se cumple:
    - sent: todas completed
    - pending: alguna con result_urls y menos envíos que atenciones
    - not_sent: en otro caso
    """
    total = len(atenciones)
    if total and all(a.completed for a in atenciones):
        return EstadoEnvio.SENT

    con_resultado = sum(1 for a in atenciones if a.result_urls)
    enviadas = sum(1 for a in atenciones if a.email_sent)
    if con_resultado > 0 and enviadas < total:
        return EstadoEnvio.PENDING

    return EstadoEnvio.NOT_SENT


def _atenciones_ordenadas(s: Session, patient_id: str | None = None) -> list[AtencionDiaria]:
    q = select(AtencionDiaria).order_by(AtencionDiaria.created_at, AtencionDiaria.id)
    if patient_id:
        q = q.where(AtencionDiaria.patient_id == patient_id)
    return list(s.scalars(q))


def resumen_estados(patient_id: str | None = None) -> list[dict[str, Any]]:
    with db_session() as s:
        grupos: dict[str, list[AtencionDiaria]] = {}
        for a in _atenciones_ordenadas(s, patient_id):
            grupos.setdefault(a.patient_id, []).append(a)

        resumen = []
        for pid, filas in grupos.items():
            p = filas[0].paciente
            resumen.append(
                {
                    "patient_id": pid,
                    "name": p.name or "",
                    "lastname": p.lastname or "",
                    "fid_number": p.fid_number or "",
                    "status": clasificar_estado(filas).value,
                    "appointment_date": filas[0].appointment_date,
                }
            )
        return resumen


def detalle_paciente(patient_id: str) -> dict[str, Any]:
    with db_session() as s:
        p = s.get(Paciente, patient_id)
        if not p:
            raise NoEncontrado(f"Paciente con ID {patient_id} no encontrado")

        filas = _atenciones_ordenadas(s, patient_id)
        if not filas:
            raise NoEncontrado(f"No se encontraron atenciones para el paciente {patient_id}")

        items: dict[str, dict[str, Any]] = {}
        doctores: dict[str, dict[str, Any]] = {}
        for a in filas:
            entrada = items.setdefault(
                a.item_id,
                {"item_id": a.item_id, "mapped_name": a.item.mapped_name or a.item.cyclhos_name, "appointments": []},
            )
            entrada["appointments"].append(
                {
                    "daily_id": a.id,
                    "appointment_date": a.appointment_date,
                    "appointment_time": a.appointment_time,
                    "doctor_id": a.doctor_id,
                }
            )
            doctores.setdefault(
                a.doctor_id, {"doctor_id": a.doctor_id, "full_name": a.doctor.full_name or a.doctor.cyclhos_name}
            )

        return {
            "patient_id": p.id,
            "name": p.name,
            "lastname": p.lastname,
            "fid_number": p.fid_number,
            "email": p.email or None,
            "phone": p.phone or None,
            "items": list(items.values()),
            "doctors": list(doctores.values()),
            "total_attentions": len(filas),
        }


# =========================
# Propagación de 'completed' tras envío de correo
# =========================
def _union_ordenada(actuales: Iterable[str], nuevas: Iterable[str]) -> list[str]:
    resultado = list(actuales or [])
    for ruta in nuevas or []:
        if ruta and ruta not in resultado:
            resultado.append(ruta)
    return resultado


def recalcular_completado(s: Session, patient_id: str) -> bool:
    """
    Idempotente: si TODAS las atenciones del paciente tienen correo enviado,
    sent_time y algún result_url, se marcan todas completed=True.
    Nunca desmarca. Devuelve True si el paciente queda completado.
    """
    filas = list(s.scalars(select(AtencionDiaria).where(AtencionDiaria.patient_id == patient_id)))
    if not filas:
        return False

    listas = all(a.email_sent and a.email_sent_time is not None and a.result_urls for a in filas)
    if not listas:
        logger.info(
            "Aún hay atenciones del paciente %s sin resultados o sin correo enviado; completed se mantiene", patient_id
        )
        return False

    for a in filas:
        a.completed = True
    logger.info("Todas las atenciones del paciente %s marcadas completed", patient_id)
    return True


def marcar_enviadas(atencion_ids: Sequence[str] | None, report_paths: Sequence[str] | None = None) -> None:
    ids = [i.strip() for i in (atencion_ids or []) if i and i.strip()]
    if not ids:
        logger.warning("marcar_enviadas sin ids de atención: no se hace nada")
        return

    with db_session() as s:
        filas = list(s.scalars(select(AtencionDiaria).where(AtencionDiaria.id.in_(ids))))
        if not filas:
            logger.warning("Ningún id de atención era válido (%s): no se actualiza nada", ", ".join(ids))
            return

        momento = ahora()
        for a in filas:
            a.email_sent = True
            a.email_sent_time = momento
            a.result_urls = _union_ordenada(a.result_urls, report_paths or [])
        s.flush()

        # se asume que todas pertenecen al mismo paciente
        recalcular_completado(s, filas[0].patient_id)


def recalcular_todos() -> int:
    """Recalcula 'completed' para cada paciente con atenciones; devuelve cuántos quedan completados."""
    with db_session() as s:
        pacientes = list(s.scalars(select(AtencionDiaria.patient_id).distinct()))
        return sum(1 for pid in pacientes if recalcular_completado(s, pid))


# =========================
# Mantenimiento de atenciones
# =========================
def lista_atenciones_flat() -> list[dict[str, Any]]:
    with db_session() as s:
        resultado = []
        for a in _atenciones_ordenadas(s):
            data = atencion_detalle(a)
            data["appointment_date"] = fecha_larga(a.appointment_date)
            resultado.append(data)
        return resultado


def atenciones_por_fid(fid_number: str) -> list[dict[str, Any]]:
    with db_session() as s:
        q = (
            select(AtencionDiaria)
            .join(Paciente, Paciente.id == AtencionDiaria.patient_id)
            .where(Paciente.fid_number == fid_number)
            .order_by(AtencionDiaria.created_at, AtencionDiaria.id)
        )
        filas = [atencion_detalle(a) for a in s.scalars(q)]
        if not filas:
            raise NoEncontrado(f"No se encontraron citas para FID {fid_number}")
        return filas


def obtener_atencion(atencion_id: str) -> dict[str, Any]:
    with db_session() as s:
        a = s.get(AtencionDiaria, atencion_id)
        if not a:
            raise NoEncontrado(f"Registro diario con ID {atencion_id} no encontrado")
        return atencion_detalle(a)


def actualizar_atencion(atencion_id: str, cambios: dict[str, Any]) -> dict[str, Any]:
    with db_session() as s:
        a = s.get(AtencionDiaria, atencion_id)
        if not a:
            raise NoEncontrado(f"Registro diario con ID {atencion_id} no encontrado")

        for campo in ("appointment_date", "appointment_time", "completed", "result_urls"):
            if cambios.get(campo) is not None:
                setattr(a, campo, cambios[campo])
        if cambios.get("source") is not None:
            a.source = _fuente(cambios["source"])
        estado = cambios.get("email_status")
        if estado is not None:
            if estado.get("sent") is not None:
                a.email_sent = estado["sent"]
            if "sent_time" in estado:
                a.email_sent_time = estado["sent_time"]
        if cambios.get("doctor_id") is not None:
            if not s.get(Doctor, cambios["doctor_id"]):
                raise NoEncontrado(f"Doctor con ID {cambios['doctor_id']} no encontrado")
            a.doctor_id = cambios["doctor_id"]
        if cambios.get("item_id") is not None:
            if not s.get(Item, cambios["item_id"]):
                raise NoEncontrado(f"Item con ID {cambios['item_id']} no encontrado")
            a.item_id = cambios["item_id"]

        s.flush()
        return atencion_flat(a)


def cancelar_atencion(atencion_id: str, usuario_id: str) -> dict[str, Any]:
    with db_session() as s:
        a = s.get(AtencionDiaria, atencion_id)
        if not a:
            raise NoEncontrado(f"Registro diario con ID {atencion_id} no encontrado")
        a.cancelled_by_id = usuario_id
        s.flush()
        logger.info("Atención %s cancelada por el usuario %s", atencion_id, usuario_id)
        return atencion_flat(a)


def eliminar_atencion(atencion_id: str) -> bool:
    with db_session() as s:
        a = s.get(AtencionDiaria, atencion_id)
        if not a:
            return False
        s.delete(a)
        return True
