"""
Configuración del sistema de logging de la aplicación

Gestiona el logging a consola y, opcionalmente, a archivo con formato estandarizado.
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

LOGS_DIR = Path("logs")


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    format_string: Optional[str] = None,
) -> None:
    """
    Configurar sistema de logging para toda la aplicación

    Args:
        log_level: Nivel de logging (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Nombre opcional de archivo dentro de ./logs
        format_string: Formato opcional personalizado
    """
    if format_string is None:
        format_string = (
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(filename)s:%(lineno)d] - %(message)s"
        )

    formatter = logging.Formatter(format_string)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Eliminar handlers existentes (setup idempotente en reinicios de uvicorn)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        LOGS_DIR.mkdir(exist_ok=True)
        file_handler = logging.FileHandler(LOGS_DIR / log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    """
    Obtener instancia de logger para un módulo

    Args:
        name: Nombre del logger (típicamente __name__)
    """
    return logging.getLogger(name)
