from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def new_uuid() -> str:
    return str(uuid.uuid4())


def ahora() -> datetime:
    """Instante actual en UTC, sin tzinfo (SQLite no conserva el offset)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CategoriaItem(enum.Enum):
    ESTUDIO = "Estudio"
    INFORME = "Informe"


class FuenteAtencion(enum.Enum):
    EXCEL = "excel"
    MANUAL = "manual"


class Paciente(Base):
    __tablename__ = "pacientes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    fid_number: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)  # cédula
    name: Mapped[str] = mapped_column(String(80), nullable=False)
    lastname: Mapped[str] = mapped_column(String(80), nullable=False)
    email: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    phone: Mapped[str] = mapped_column(String(30), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=ahora, nullable=False)

    atenciones: Mapped[list["AtencionDiaria"]] = relationship(
        back_populates="paciente", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"Paciente({self.fid_number}, {self.name} {self.lastname})"


class Doctor(Base):
    __tablename__ = "doctores"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    fid_number: Mapped[str | None] = mapped_column(String(30), nullable=True)
    full_name: Mapped[str] = mapped_column(String(120), nullable=False)
    cyclhos_name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    phone: Mapped[str] = mapped_column(String(30), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=ahora, nullable=False)

    atenciones: Mapped[list["AtencionDiaria"]] = relationship(back_populates="doctor")

    def __repr__(self) -> str:
        return f"Doctor({self.full_name}, {self.cyclhos_name})"


class ItemSubitem(Base):
    """Composición ordenada de un combo: item padre -> subitem en 'posicion'."""
    __tablename__ = "item_subitems"

    item_id: Mapped[str] = mapped_column(ForeignKey("items.id", ondelete="CASCADE"), primary_key=True)
    posicion: Mapped[int] = mapped_column(Integer, primary_key=True)
    subitem_id: Mapped[str] = mapped_column(ForeignKey("items.id"), nullable=False)

    item: Mapped["Item"] = relationship(foreign_keys=[item_id], back_populates="composicion")
    subitem: Mapped["Item"] = relationship(foreign_keys=[subitem_id])


class Item(Base):
    __tablename__ = "items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    item_id: Mapped[str] = mapped_column(String(10), nullable=False, unique=True)  # "001", "002", ...
    cyclhos_name: Mapped[str] = mapped_column(String(160), nullable=False)
    mapped_name: Mapped[str] = mapped_column(String(160), nullable=False)
    category: Mapped[CategoriaItem] = mapped_column(
        Enum(CategoriaItem, values_callable=lambda e: [c.value for c in e]),
        default=CategoriaItem.ESTUDIO,
        nullable=False,
    )
    file: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    number_pdf: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_by: Mapped[str] = mapped_column(String(50), nullable=False, default="system")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=ahora, nullable=False)

    composicion: Mapped[list["ItemSubitem"]] = relationship(
        foreign_keys=[ItemSubitem.item_id],
        back_populates="item",
        cascade="all, delete-orphan",
        order_by=ItemSubitem.posicion,
    )
    atenciones: Mapped[list["AtencionDiaria"]] = relationship(back_populates="item")

    @property
    def sub_items(self) -> list[str]:
        return [c.subitem_id for c in self.composicion]

    @property
    def es_combo(self) -> bool:
        return len(self.composicion) > 0

    def __repr__(self) -> str:
        return f"Item({self.item_id}, {self.cyclhos_name})"


class AtencionDiaria(Base):
    __tablename__ = "atenciones_diarias"
    # Sin UniqueConstraint sobre (paciente, doctor, item, fecha, hora):
    # la unicidad la garantiza el control de duplicados al crear.

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)

    appointment_date: Mapped[str] = mapped_column(String(10), nullable=False)  # YYYY-MM-DD
    appointment_time: Mapped[str] = mapped_column(String(5), nullable=False)   # HH:MM

    patient_id: Mapped[str] = mapped_column(ForeignKey("pacientes.id"), nullable=False, index=True)
    doctor_id: Mapped[str] = mapped_column(ForeignKey("doctores.id"), nullable=False)
    item_id: Mapped[str] = mapped_column(ForeignKey("items.id"), nullable=False)

    completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    result_urls: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)

    email_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    email_sent_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    cancelled_by_id: Mapped[str | None] = mapped_column(ForeignKey("usuarios.id"), nullable=True)

    source: Mapped[FuenteAtencion] = mapped_column(
        Enum(FuenteAtencion, values_callable=lambda e: [c.value for c in e]),
        default=FuenteAtencion.EXCEL,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=ahora, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=ahora, onupdate=ahora, nullable=False)

    paciente: Mapped["Paciente"] = relationship(back_populates="atenciones")
    doctor: Mapped["Doctor"] = relationship(back_populates="atenciones")
    item: Mapped["Item"] = relationship(back_populates="atenciones")

    @property
    def email_status(self) -> dict:
        return {"sent": self.email_sent, "sent_time": self.email_sent_time}

    def __repr__(self) -> str:
        return f"AtencionDiaria({self.appointment_date} {self.appointment_time}, item={self.item_id})"
