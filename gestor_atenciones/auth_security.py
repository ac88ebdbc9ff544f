"""
Contraseñas (bcrypt) y tokens de acceso (JWT HS256) de los usuarios del back-office.

El token lleva el id del usuario en 'sub' y, para la UI, su username y rol.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from passlib.context import CryptContext

from .auth_models import Usuario
from .config import cargar_configuracion
from .logging_config import get_logger

logger = get_logger(__name__)

_config = cargar_configuracion()
JWT_ALG = "HS256"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def emitir_token(usuario: Usuario) -> str:
    emitido = datetime.now(timezone.utc)
    vence = emitido + timedelta(minutes=_config.jwt_expire_minutes)
    claims = {
        "sub": usuario.id,
        "username": usuario.username,
        "role": usuario.role.value,
        "iat": int(emitido.timestamp()),
        "exp": int(vence.timestamp()),
    }
    return jwt.encode(claims, _config.jwt_secret, algorithm=JWT_ALG)


def usuario_id_del_token(token: str) -> str | None:
    """Id del usuario si el token es válido y no venció; None en otro caso."""
    # la UI a veces pega el token con comillas
    limpio = token.strip().strip('"').strip("'")
    try:
        claims = jwt.decode(limpio, _config.jwt_secret, algorithms=[JWT_ALG])
    except JWTError as e:
        logger.info("Token rechazado: %s", e)
        return None
    return claims.get("sub")
