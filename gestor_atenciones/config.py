from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# DB SQLite por defecto en la raíz del proyecto (junto a streamlit_app.py)
DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "gestor_atenciones.sqlite"


def _flag(nombre: str, default: str) -> bool:
    return os.getenv(nombre, default).strip().lower() in ("1", "true", "yes", "si")


@dataclass(frozen=True)
class ConfigSmtp:
    host: str | None
    port: int = 587
    secure: bool = False
    user: str | None = None
    password: str | None = None
    remitente: str | None = None

    @property
    def completa(self) -> bool:
        return bool(self.host and self.user and self.password)

    @property
    def direccion_remitente(self) -> str:
        return self.remitente or self.user or "no-reply@example.com"


@dataclass(frozen=True)
class Configuracion:
    """
    Configuración explícita de la aplicación.

    Se construye una sola vez (cargar_configuracion) y se pasa a los
    colaboradores externos (transporte de correo, fuente de informes):
    la lógica de dominio no lee variables de entorno.
    """
    database_url: str
    log_level: str = "INFO"
    log_file: str | None = None
    reports_base_path: str = ""
    cargar_datos_demo: bool = True
    jwt_secret: str = "CHANGE_ME_DEV_SECRET"
    jwt_expire_minutes: int = 60
    smtp: ConfigSmtp = field(default_factory=lambda: ConfigSmtp(host=None))


def cargar_configuracion() -> Configuracion:
    smtp = ConfigSmtp(
        host=os.getenv("SMTP_HOST"),
        port=int(os.getenv("SMTP_PORT", "587")),
        secure=_flag("SMTP_SECURE", "false"),
        user=os.getenv("SMTP_USER"),
        password=os.getenv("SMTP_PASS"),
        remitente=os.getenv("SMTP_FROM"),
    )
    return Configuracion(
        database_url=os.getenv("DATABASE_URL", f"sqlite:///{DEFAULT_DB_PATH}"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_file=os.getenv("LOG_FILE") or None,
        reports_base_path=os.getenv("REPORTS_BASE_PATH", ""),
        cargar_datos_demo=_flag("SEED_DEMO", "true"),
        jwt_secret=os.getenv("JWT_SECRET", "CHANGE_ME_DEV_SECRET"),
        jwt_expire_minutes=int(os.getenv("JWT_EXPIRE_MINUTES", "60")),
        smtp=smtp,
    )
