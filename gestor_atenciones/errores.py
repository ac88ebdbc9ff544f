from __future__ import annotations


class ErrorDominio(Exception):
    """Base de los errores de dominio; la API los traduce a HTTP con status_code."""
    status_code = 400

    def __init__(self, mensaje: str) -> None:
        super().__init__(mensaje)
        self.mensaje = mensaje


class DatosIncompletos(ErrorDominio):
    """Faltan campos identificativos en la petición (cédula, doctor o estudio)."""
    status_code = 400


class NoEncontrado(ErrorDominio):
    status_code = 404


class Conflicto(ErrorDominio):
    """Clave natural duplicada en una creación directa."""
    status_code = 409


class ReferenciaInvalida(ErrorDominio):
    """Algún id de sub_items no existe."""
    status_code = 400


class FalloEnvio(ErrorDominio):
    status_code = 502
