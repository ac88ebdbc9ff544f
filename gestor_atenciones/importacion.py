"""
Lectura de la planilla diaria (.xlsx) y conversión a solicitudes de atención.

Columnas reconocidas (sin distinguir mayúsculas ni acentos de cabecera):
fecha, hora, cedula, nombre, apellido, email, telefono, doctor, estudio.
"""
from __future__ import annotations

import unicodedata
import zipfile
from datetime import date, datetime, time
from io import BytesIO
from typing import Any, BinaryIO

import pandas as pd

from .atenciones import DatosPaciente, SolicitudAtencion
from .errores import DatosIncompletos
from .logging_config import get_logger

logger = get_logger(__name__)

COLUMNAS = {
    "fecha": "appointment_date",
    "appointment_date": "appointment_date",
    "hora": "appointment_time",
    "appointment_time": "appointment_time",
    "cedula": "fid_number",
    "fid_number": "fid_number",
    "nombre": "name",
    "name": "name",
    "apellido": "lastname",
    "lastname": "lastname",
    "email": "email",
    "correo": "email",
    "telefono": "phone",
    "phone": "phone",
    "doctor": "doctor",
    "medico": "doctor",
    "estudio": "study",
    "study": "study",
}


def _clave(cabecera: Any) -> str:
    texto = unicodedata.normalize("NFKD", str(cabecera)).encode("ascii", "ignore").decode()
    return texto.strip().lower().replace(" ", "_")


def _vacio(valor: Any) -> bool:
    return valor is None or (not isinstance(valor, str) and bool(pd.isna(valor)))


def _texto(valor: Any) -> str | None:
    if _vacio(valor):
        return None
    if isinstance(valor, float) and valor.is_integer():
        # Excel guarda las cédulas como número: 12345678.0
        return str(int(valor))
    texto = str(valor).strip()
    return texto or None


def _fecha(valor: Any) -> str | None:
    if _vacio(valor):
        return None
    if isinstance(valor, (pd.Timestamp, datetime)):
        return valor.strftime("%Y-%m-%d")
    if isinstance(valor, date):
        return valor.isoformat()
    texto = _texto(valor)
    if texto is None:
        return None
    try:
        return pd.to_datetime(texto, dayfirst="/" in texto).strftime("%Y-%m-%d")
    except (ValueError, TypeError):
        return texto


def _hora(valor: Any) -> str | None:
    if _vacio(valor):
        return None
    if isinstance(valor, (time, datetime, pd.Timestamp)):
        return valor.strftime("%H:%M")
    texto = _texto(valor)
    if texto and len(texto) >= 8 and texto.count(":") == 2:
        return texto[:5]  # "09:00:00"
    return texto


def leer_planilla(archivo: bytes | BinaryIO) -> list[SolicitudAtencion]:
    """Convierte la primera hoja de la planilla en solicitudes (source='excel')."""
    if isinstance(archivo, bytes):
        archivo = BytesIO(archivo)
    try:
        df = pd.read_excel(archivo, sheet_name=0, engine="openpyxl")
    except (ValueError, OSError, zipfile.BadZipFile) as e:
        raise DatosIncompletos(f"No se pudo leer la planilla: {e}") from e

    df = df.rename(columns={c: COLUMNAS.get(_clave(c), _clave(c)) for c in df.columns})
    if "fid_number" not in df.columns:
        raise DatosIncompletos("La planilla no tiene columna de cédula")

    solicitudes: list[SolicitudAtencion] = []
    for _, row in df.iterrows():
        fila = row.to_dict()
        if all(_texto(v) is None for v in fila.values()):
            continue
        solicitudes.append(
            SolicitudAtencion(
                appointment_date=_fecha(fila.get("appointment_date")),
                appointment_time=_hora(fila.get("appointment_time")),
                patient=DatosPaciente(
                    fid_number=_texto(fila.get("fid_number")),
                    name=_texto(fila.get("name")),
                    lastname=_texto(fila.get("lastname")),
                    email=_texto(fila.get("email")),
                    phone=_texto(fila.get("phone")),
                ),
                doctor_name=_texto(fila.get("doctor")),
                study_name=_texto(fila.get("study")),
                source="excel",
            )
        )

    logger.info("Planilla leída: %d filas", len(solicitudes))
    return solicitudes
