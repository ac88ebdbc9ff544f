from datetime import datetime

import pytest
from sqlalchemy import select

from gestor_atenciones.atenciones import (
    DatosPaciente,
    EstadoEnvio,
    SolicitudAtencion,
    clasificar_estado,
    crear_atencion,
    detalle_paciente,
    marcar_enviadas,
    recalcular_todos,
    resumen_estados,
)
from gestor_atenciones.db import db_session
from gestor_atenciones.errores import NoEncontrado
from gestor_atenciones.models import AtencionDiaria
from gestor_atenciones.services import crear_paciente


def atencion(completed=False, result_urls=None, email_sent=False):
    return AtencionDiaria(completed=completed, result_urls=result_urls or [], email_sent=email_sent)


def registrar(study, fid="12345678", fecha="2025-10-27", hora="09:00"):
    return crear_atencion(
        SolicitudAtencion(
            appointment_date=fecha,
            appointment_time=hora,
            patient=DatosPaciente(fid, "Juan", "Perez"),
            doctor_name="GOMEZ_MARIA_J",
            study_name=study,
        )
    )


def filas_de(patient_id):
    with db_session() as s:
        return list(s.scalars(select(AtencionDiaria).where(AtencionDiaria.patient_id == patient_id)))


@pytest.mark.parametrize(
    "filas, esperado",
    [
        ([atencion(completed=True), atencion(completed=True)], EstadoEnvio.SENT),
        ([atencion(result_urls=["a.pdf"], email_sent=True), atencion()], EstadoEnvio.PENDING),
        ([atencion(result_urls=["a.pdf"]), atencion(result_urls=["b.pdf"])], EstadoEnvio.PENDING),
        ([atencion(), atencion()], EstadoEnvio.NOT_SENT),
        ([atencion(email_sent=True), atencion(email_sent=True)], EstadoEnvio.NOT_SENT),
        ([atencion(result_urls=["a.pdf"], email_sent=True)], EstadoEnvio.NOT_SENT),
        ([atencion(completed=True), atencion()], EstadoEnvio.NOT_SENT),
    ],
)
def test_clasificar_estado(filas, esperado):
    assert clasificar_estado(filas) is esperado


def test_summary_groups_by_patient(catalogo):
    combo = registrar("PANEL CORNEAL", fid="111", fecha="2025-10-27")
    registrar("PAQUIMETRÍA", fid="111", fecha="2025-10-28")
    registrar("TOPOGRAFÍA CORNEAL", fid="222")

    resumen = resumen_estados()
    assert [r["fid_number"] for r in resumen] == ["111", "222"]
    assert resumen[0]["appointment_date"] == "2025-10-27"
    assert all(r["status"] == "not_sent" for r in resumen)

    marcar_enviadas([combo.atenciones[0]["id"]], ["111/topografia.pdf"])
    estados = {r["fid_number"]: r["status"] for r in resumen_estados()}
    assert estados == {"111": "pending", "222": "not_sent"}

    solo = resumen_estados(combo.atenciones[0]["patient_id"])
    assert len(solo) == 1 and solo[0]["fid_number"] == "111"


def test_completion_requires_every_appointment(catalogo):
    r = registrar("PANEL CORNEAL")
    primera, segunda = (a["id"] for a in r.atenciones)
    patient_id = r.atenciones[0]["patient_id"]

    marcar_enviadas([primera], ["12345678/topo.pdf"])
    filas = filas_de(patient_id)
    assert not any(a.completed for a in filas)
    enviada = next(a for a in filas if a.id == primera)
    assert enviada.email_sent is True
    assert isinstance(enviada.email_sent_time, datetime)
    assert enviada.result_urls == ["12345678/topo.pdf"]

    marcar_enviadas([segunda], ["12345678/paqui.pdf"])
    assert all(a.completed for a in filas_de(patient_id))
    assert resumen_estados()[0]["status"] == "sent"


def test_result_urls_are_a_set_union(catalogo):
    r = registrar("PAQUIMETRÍA")
    aid = r.atencion["id"]
    marcar_enviadas([aid], ["a.pdf", "b.pdf"])
    marcar_enviadas([aid], ["b.pdf", "c.pdf"])
    (fila,) = filas_de(r.atencion["patient_id"])
    assert fila.result_urls == ["a.pdf", "b.pdf", "c.pdf"]
    assert fila.completed is True


@pytest.mark.parametrize("ids", [None, [], ["", "  "], ["no-existe"]])
def test_mark_emailed_without_valid_ids_is_noop(catalogo, ids):
    r = registrar("PAQUIMETRÍA")
    marcar_enviadas(ids, ["a.pdf"])
    (fila,) = filas_de(r.atencion["patient_id"])
    assert fila.email_sent is False
    assert fila.result_urls == []


def test_completed_is_never_unset(catalogo):
    r = registrar("PAQUIMETRÍA")
    marcar_enviadas([r.atencion["id"]], ["a.pdf"])
    registrar("TOPOGRAFÍA CORNEAL")  # llega una atención nueva para el mismo paciente

    assert recalcular_todos() == 0
    filas = {a.item_id: a for a in filas_de(r.atencion["patient_id"])}
    assert filas[catalogo["paqui"]["id"]].completed is True
    assert filas[catalogo["topo"]["id"]].completed is False


def test_detalle_paciente(catalogo):
    r = registrar("PANEL CORNEAL")
    registrar("PAQUIMETRÍA", hora="11:00")
    det = detalle_paciente(r.atenciones[0]["patient_id"])

    assert det["fid_number"] == "12345678"
    assert det["total_attentions"] == 3
    assert [i["mapped_name"] for i in det["items"]] == ["Topografía corneal", "Paquimetría"]
    assert [len(i["appointments"]) for i in det["items"]] == [1, 2]
    assert det["doctors"] == [{"doctor_id": catalogo["doctor"]["id"], "full_name": "Dra. Gómez"}]


def test_detalle_paciente_not_found(catalogo):
    with pytest.raises(NoEncontrado):
        detalle_paciente("no-existe")

    p = crear_paciente("999", "Ana", "Ruiz")
    with pytest.raises(NoEncontrado):
        detalle_paciente(p["id"])
