from __future__ import annotations

import re

from sqlalchemy import select

from .auth_models import RolUsuario, Usuario
from .auth_security import hash_password, verify_password
from .db import db_session
from .errores import Conflicto, DatosIncompletos

_PASSWORD_RE = re.compile(r"^[0-9]{4,8}$")


def crear_usuario(username: str, password: str, role: str | None = None) -> str:
    username = username.strip().lower()
    if not username or not password:
        raise DatosIncompletos("Usuario y contraseña son obligatorios.")
    if not _PASSWORD_RE.match(password):
        raise DatosIncompletos("La contraseña debe ser numérica de 4 a 8 dígitos.")
    try:
        rol = RolUsuario(role) if role else RolUsuario.TECHNICIAN
    except ValueError:
        raise DatosIncompletos("role debe ser admin, doctor o technician.") from None

    with db_session() as s:
        exists = s.execute(select(Usuario).where(Usuario.username == username)).scalar_one_or_none()
        if exists:
            raise Conflicto("El usuario ya existe.")

        u = Usuario(username=username, password_hash=hash_password(password), role=rol, is_active=True)
        s.add(u)
        s.flush()
        return u.id


def autenticar(username: str, password: str) -> Usuario | None:
    username = username.strip().lower()
    with db_session() as s:
        u = s.execute(select(Usuario).where(Usuario.username == username)).scalar_one_or_none()
        if not u or not u.is_active:
            return None
        if not verify_password(password, u.password_hash):
            return None
        return u


def get_usuario_by_id(user_id: str) -> Usuario | None:
    with db_session() as s:
        return s.get(Usuario, user_id)
