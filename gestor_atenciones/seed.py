from __future__ import annotations

from sqlalchemy import select

from .db import db_session
from .models import CategoriaItem, Doctor, Item
from .services import componer_item, siguiente_item_id, derivar_mapped_name


def seed_base() -> None:
    """
    Carga datos mínimos (idempotente):
    - doctores
    - estudios simples
    - un combo que agrupa dos estudios
    """
    with db_session() as s:
        doctores = [
            ("Dra. Gómez", "GOMEZ_MARIA_J", "dgomez@clinic.com"),
            ("Dr. Pérez", "PEREZ_LUIS_A", "lperez@clinic.com"),
        ]
        for full_name, cyclhos_name, email in doctores:
            if s.execute(select(Doctor).where(Doctor.cyclhos_name == cyclhos_name)).scalar_one_or_none() is None:
                s.add(Doctor(full_name=full_name, cyclhos_name=cyclhos_name, email=email))

        def add_item(cyclhos_name: str, category: CategoriaItem, sub_items: list[Item] | None = None) -> Item:
            item = s.execute(select(Item).where(Item.cyclhos_name == cyclhos_name)).scalar_one_or_none()
            if item is None:
                item = Item(
                    item_id=siguiente_item_id(s),
                    cyclhos_name=cyclhos_name,
                    mapped_name=derivar_mapped_name(cyclhos_name),
                    category=category,
                    number_pdf=len(sub_items or []),
                )
                componer_item(item, [i.id for i in sub_items or []])
                s.add(item)
                s.flush()
            return item

        topo = add_item("TOPOGRAFÍA CORNEAL", CategoriaItem.ESTUDIO)
        paqui = add_item("PAQUIMETRÍA", CategoriaItem.ESTUDIO)
        add_item("CAMPO VISUAL", CategoriaItem.ESTUDIO)
        add_item("PANEL CORNEAL", CategoriaItem.ESTUDIO, sub_items=[topo, paqui])
