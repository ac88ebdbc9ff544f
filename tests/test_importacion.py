from datetime import datetime, time
from io import BytesIO

import pandas as pd
import pytest

from gestor_atenciones.atenciones import crear_atenciones_lote
from gestor_atenciones.errores import DatosIncompletos
from gestor_atenciones.importacion import leer_planilla


def planilla(filas):
    buf = BytesIO()
    pd.DataFrame(filas).to_excel(buf, index=False, engine="openpyxl")
    return buf.getvalue()


def test_reads_spanish_headers_and_excel_types():
    contenido = planilla(
        [
            {
                "Fecha": datetime(2025, 10, 27),
                "Hora": time(9, 30),
                "Cédula": 12345678,
                "Nombre": "Juan",
                "Apellido": "Pérez",
                "Email": "juan@example.com",
                "Teléfono": None,
                "Médico": "GOMEZ_MARIA_J",
                "Estudio": "PANEL CORNEAL",
            },
            {
                "Fecha": "27/10/2025",
                "Hora": "10:00:00",
                "Cédula": "V-999",
                "Nombre": "Ana",
                "Apellido": "Ruiz",
                "Email": None,
                "Teléfono": "0414-1234567",
                "Médico": "PEREZ_LUIS_A",
                "Estudio": "PAQUIMETRÍA",
            },
        ]
    )
    primera, segunda = leer_planilla(contenido)

    assert primera.appointment_date == "2025-10-27"
    assert primera.appointment_time == "09:30"
    assert primera.fid_number == "12345678"
    assert primera.patient.lastname == "Pérez"
    assert primera.patient.phone is None
    assert primera.doctor_name == "GOMEZ_MARIA_J"
    assert primera.study_name == "PANEL CORNEAL"
    assert primera.source == "excel"

    assert segunda.appointment_date == "2025-10-27"
    assert segunda.appointment_time == "10:00"
    assert segunda.fid_number == "V-999"
    assert segunda.patient.email is None
    assert segunda.patient.phone == "0414-1234567"


def test_blank_rows_are_skipped():
    contenido = planilla(
        [
            {"cedula": "1", "doctor": "X", "estudio": "Y"},
            {"cedula": None, "doctor": None, "estudio": None},
            {"cedula": "2", "doctor": "X", "estudio": "Y"},
        ]
    )
    assert [s.fid_number for s in leer_planilla(BytesIO(contenido))] == ["1", "2"]


def test_missing_id_column_is_rejected():
    with pytest.raises(DatosIncompletos):
        leer_planilla(planilla([{"nombre": "Juan", "estudio": "Y"}]))


def test_unreadable_file_is_rejected():
    with pytest.raises(DatosIncompletos):
        leer_planilla(b"esto no es un xlsx")


def test_import_feeds_batch(catalogo):
    contenido = planilla(
        [
            {"fecha": "2025-10-27", "hora": "09:00", "cedula": "111", "nombre": "Juan",
             "apellido": "Perez", "doctor": "gomez_maria_j", "estudio": "panel corneal"},
            {"fecha": "2025-10-27", "hora": "09:15", "cedula": "222", "nombre": "Ana",
             "apellido": "Ruiz", "doctor": "gomez_maria_j", "estudio": "RESONANCIA"},
        ]
    )
    r = crear_atenciones_lote(leer_planilla(contenido))
    assert r.created_count == 2
    assert r.errors == [{"fid_number": "222", "error": 'Estudio "RESONANCIA" no encontrado'}]
