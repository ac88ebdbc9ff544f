from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import auth_models  # noqa: F401  (registra la tabla usuarios en el metadata)
from .db import Base, db_session, engine
from .errores import Conflicto, DatosIncompletos, NoEncontrado, ReferenciaInvalida
from .logging_config import get_logger
from .models import AtencionDiaria, CategoriaItem, Doctor, Item, ItemSubitem, Paciente

logger = get_logger(__name__)


# =========================
# Bootstrap DB
# =========================
def init_db() -> None:
    """Crea las tablas si no existen."""
    Base.metadata.create_all(bind=engine)


# =========================
# Serialización plana
# =========================
def paciente_flat(p: Paciente) -> dict[str, Any]:
    return {
        "id": p.id,
        "fid_number": p.fid_number,
        "name": p.name,
        "lastname": p.lastname,
        "contact_info": {"email": p.email, "phone": p.phone},
    }


def doctor_flat(d: Doctor) -> dict[str, Any]:
    return {
        "id": d.id,
        "fid_number": d.fid_number,
        "full_name": d.full_name,
        "cyclhos_name": d.cyclhos_name,
        "contact_info": {"email": d.email, "phone": d.phone},
    }


def item_flat(i: Item, con_subitems: bool = False) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": i.id,
        "item_id": i.item_id,
        "cyclhos_name": i.cyclhos_name,
        "mapped_name": i.mapped_name,
        "category": i.category.value,
        "file": i.file,
        "number_pdf": i.number_pdf,
        "sub_items": i.sub_items,
    }
    if con_subitems:
        # la sesión debe seguir abierta: carga perezosa de la composición
        data["sub_items_detail"] = [item_flat(c.subitem) for c in i.composicion]
    return data


def _aplicar_cambios(obj: Any, cambios: dict[str, Any], permitidos: Iterable[str]) -> None:
    for campo in permitidos:
        if campo in cambios and cambios[campo] is not None:
            setattr(obj, campo, cambios[campo])


# =========================
# Pacientes
# =========================
def insertar_paciente(
    s: Session,
    fid_number: str,
    name: str,
    lastname: str,
    email: str | None = None,
    phone: str | None = None,
) -> Paciente:
    """Alta de paciente dentro de una sesión abierta; Conflicto si la cédula ya existe."""
    fid_number = (fid_number or "").strip()
    if not fid_number:
        raise DatosIncompletos("fid_number es obligatorio.")

    if s.scalar(select(Paciente.id).where(Paciente.fid_number == fid_number)) is not None:
        raise Conflicto(f"Paciente con FID {fid_number} ya existe")

    p = Paciente(
        fid_number=fid_number,
        name=(name or "").strip(),
        lastname=(lastname or "").strip(),
        email=(email or "").strip(),
        phone=(phone or "").strip(),
    )
    s.add(p)
    try:
        s.flush()
    except IntegrityError:
        raise Conflicto(f"Paciente con FID {fid_number} ya existe") from None
    return p


def crear_paciente(
    fid_number: str, name: str, lastname: str, email: str | None = None, phone: str | None = None
) -> dict[str, Any]:
    with db_session() as s:
        p = insertar_paciente(s, fid_number, name, lastname, email, phone)
        logger.info("Paciente %s creado (id=%s)", p.fid_number, p.id)
        return paciente_flat(p)


def lista_pacientes_flat() -> list[dict]:
    with db_session() as s:
        return [paciente_flat(p) for p in s.scalars(select(Paciente).order_by(Paciente.lastname, Paciente.name))]


def obtener_paciente(paciente_id: str) -> dict[str, Any]:
    with db_session() as s:
        p = s.get(Paciente, paciente_id)
        if not p:
            raise NoEncontrado(f"Paciente con ID {paciente_id} no encontrado")
        return paciente_flat(p)


def paciente_por_fid(fid_number: str) -> dict[str, Any]:
    with db_session() as s:
        p = s.scalar(select(Paciente).where(Paciente.fid_number == fid_number))
        if not p:
            raise NoEncontrado(f"Paciente con FID {fid_number} no encontrado")
        return paciente_flat(p)


def actualizar_paciente(paciente_id: str, cambios: dict[str, Any]) -> dict[str, Any]:
    with db_session() as s:
        p = s.get(Paciente, paciente_id)
        if not p:
            raise NoEncontrado(f"Paciente con ID {paciente_id} no encontrado")
        _aplicar_cambios(p, cambios, ("name", "lastname", "email", "phone"))
        return paciente_flat(p)


def eliminar_paciente(paciente_id: str) -> dict[str, Any]:
    """Elimina el paciente y, en cascada, sus atenciones."""
    with db_session() as s:
        p = s.get(Paciente, paciente_id)
        if not p:
            raise NoEncontrado(f"Paciente con ID {paciente_id} no encontrado")
        data = paciente_flat(p)
        s.delete(p)
        return data


# =========================
# Doctores
# =========================
def crear_doctor(
    full_name: str,
    cyclhos_name: str,
    fid_number: str | None = None,
    email: str | None = None,
    phone: str | None = None,
) -> dict[str, Any]:
    if not (full_name or "").strip() or not (cyclhos_name or "").strip():
        raise DatosIncompletos("full_name y cyclhos_name son obligatorios.")
    with db_session() as s:
        d = Doctor(
            full_name=full_name.strip(),
            cyclhos_name=cyclhos_name.strip(),
            fid_number=fid_number,
            email=(email or "").strip(),
            phone=(phone or "").strip(),
        )
        s.add(d)
        s.flush()
        return doctor_flat(d)


def lista_doctores_flat() -> list[dict]:
    with db_session() as s:
        return [doctor_flat(d) for d in s.scalars(select(Doctor).order_by(Doctor.full_name))]


def obtener_doctor(doctor_id: str) -> dict[str, Any]:
    with db_session() as s:
        d = s.get(Doctor, doctor_id)
        if not d:
            raise NoEncontrado(f"Doctor con ID {doctor_id} no encontrado")
        return doctor_flat(d)


def actualizar_doctor(doctor_id: str, cambios: dict[str, Any]) -> dict[str, Any]:
    with db_session() as s:
        d = s.get(Doctor, doctor_id)
        if not d:
            raise NoEncontrado(f"Doctor con ID {doctor_id} no encontrado")
        _aplicar_cambios(d, cambios, ("full_name", "cyclhos_name", "fid_number", "email", "phone"))
        return doctor_flat(d)


def eliminar_doctor(doctor_id: str) -> dict[str, Any]:
    with db_session() as s:
        d = s.get(Doctor, doctor_id)
        if not d:
            raise NoEncontrado(f"Doctor con ID {doctor_id} no encontrado")
        en_uso = s.scalar(select(func.count(AtencionDiaria.id)).where(AtencionDiaria.doctor_id == doctor_id))
        if en_uso:
            raise Conflicto(f"El doctor {d.full_name} tiene {en_uso} atenciones asociadas")
        data = doctor_flat(d)
        s.delete(d)
        return data


# =========================
# Items (estudios / informes)
# =========================
def derivar_mapped_name(cyclhos_name: str) -> str:
    """'TOPOGRAFÍA CORNEAL' -> 'Topografía corneal'."""
    nombre = cyclhos_name.strip()
    return nombre[:1].upper() + nombre[1:].lower()


def siguiente_item_id(s: Session) -> str:
    codigos = [c for c in s.scalars(select(Item.item_id)) if c and c.isdigit()]
    ultimo = max((int(c) for c in codigos), default=0)
    return str(ultimo + 1).zfill(3)


def _validar_subitems(s: Session, sub_items: list[str], excluir: str | None = None) -> None:
    """Todos los ids referenciados deben existir (validación explícita, no solo FK)."""
    if excluir and excluir in sub_items:
        raise ReferenciaInvalida("Un item no puede ser subitem de sí mismo")
    solicitados = set(sub_items)
    existentes = set(s.scalars(select(Item.id).where(Item.id.in_(solicitados))))
    faltantes = [i for i in sub_items if i not in existentes]
    if faltantes:
        raise ReferenciaInvalida(f"Alguno(s) de los ids en sub_items no existen: {', '.join(faltantes)}")


def componer_item(item: Item, sub_items: list[str]) -> None:
    item.composicion = [ItemSubitem(posicion=n, subitem_id=sid) for n, sid in enumerate(sub_items)]


def crear_item(
    cyclhos_name: str,
    mapped_name: str | None = None,
    category: str | None = None,
    file: str | None = None,
    number_pdf: int | None = None,
    sub_items: list[str] | None = None,
) -> dict[str, Any]:
    if not (cyclhos_name or "").strip():
        raise DatosIncompletos("cyclhos_name es obligatorio.")
    sub_items = list(sub_items or [])

    with db_session() as s:
        if sub_items:
            _validar_subitems(s, sub_items)

        item = Item(
            item_id=siguiente_item_id(s),
            cyclhos_name=cyclhos_name.strip(),
            mapped_name=mapped_name or derivar_mapped_name(cyclhos_name),
            category=CategoriaItem(category) if category else CategoriaItem.ESTUDIO,
            file=file or "",
            number_pdf=number_pdf if number_pdf is not None else len(sub_items),
        )
        componer_item(item, sub_items)
        s.add(item)
        s.flush()
        logger.info("Item %s '%s' creado (%d subitems)", item.item_id, item.cyclhos_name, len(sub_items))
        return item_flat(item)


def lista_items_flat() -> list[dict]:
    with db_session() as s:
        return [item_flat(i, con_subitems=True) for i in s.scalars(select(Item).order_by(Item.item_id))]


def obtener_item(item_pk: str) -> dict[str, Any]:
    with db_session() as s:
        i = s.get(Item, item_pk)
        if not i:
            raise NoEncontrado(f"Item con ID {item_pk} no encontrado")
        return item_flat(i, con_subitems=True)


def actualizar_item(item_pk: str, cambios: dict[str, Any]) -> dict[str, Any]:
    with db_session() as s:
        i = s.get(Item, item_pk)
        if not i:
            raise NoEncontrado(f"Item con ID {item_pk} no encontrado")

        sub_items = cambios.get("sub_items")
        if sub_items is not None:
            if sub_items:
                _validar_subitems(s, sub_items, excluir=i.id)
            # las filas viejas se borran antes: la PK (item_id, posicion) se reutiliza
            i.composicion.clear()
            s.flush()
            componer_item(i, sub_items)
            if cambios.get("number_pdf") is None:
                i.number_pdf = len(sub_items)

        if cambios.get("cyclhos_name") and cambios.get("mapped_name") is None:
            cambios = {**cambios, "mapped_name": derivar_mapped_name(cambios["cyclhos_name"])}
        if cambios.get("category") is not None:
            i.category = CategoriaItem(cambios["category"])

        _aplicar_cambios(i, cambios, ("cyclhos_name", "mapped_name", "file", "number_pdf"))
        s.flush()
        return item_flat(i, con_subitems=True)


def eliminar_item(item_pk: str) -> dict[str, Any]:
    with db_session() as s:
        i = s.get(Item, item_pk)
        if not i:
            raise NoEncontrado(f"Item con ID {item_pk} no encontrado")
        if s.scalar(select(func.count(AtencionDiaria.id)).where(AtencionDiaria.item_id == item_pk)):
            raise Conflicto(f"El item {i.item_id} tiene atenciones asociadas")
        if s.scalar(select(func.count()).select_from(ItemSubitem).where(ItemSubitem.subitem_id == item_pk)):
            raise Conflicto(f"El item {i.item_id} es subitem de un combo")
        data = item_flat(i)
        s.delete(i)
        return data
