from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base
from .models import ahora, new_uuid


class RolUsuario(enum.Enum):
    ADMIN = "admin"
    DOCTOR = "doctor"
    TECHNICIAN = "technician"


class Usuario(Base):
    """
    Usuario de la aplicación para autenticación.
    - username único (en minúsculas)
    - password_hash con bcrypt (passlib)
    - rol: admin, doctor o technician
    """
    __tablename__ = "usuarios"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    username: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[RolUsuario] = mapped_column(
        Enum(RolUsuario, values_callable=lambda e: [r.value for r in e]),
        default=RolUsuario.TECHNICIAN,
        nullable=False,
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=ahora, nullable=False)
