import smtplib

import pytest
from sqlalchemy import select

from gestor_atenciones import correo
from gestor_atenciones.atenciones import DatosPaciente, SolicitudAtencion, crear_atencion
from gestor_atenciones.config import ConfigSmtp
from gestor_atenciones.correo import FuenteInformes, SolicitudEnvioInforme, TransporteCorreo, enviar_informe
from gestor_atenciones.db import db_session
from gestor_atenciones.errores import FalloEnvio
from gestor_atenciones.models import AtencionDiaria


class TransporteFalso:
    def __init__(self, error=None):
        self.enviados = []
        self.error = error

    def enviar(self, destinatario, asunto, cuerpo, adjuntos=()):
        if self.error:
            raise self.error
        self.enviados.append((destinatario, asunto, cuerpo, list(adjuntos)))
        return "<msg-1@test>"


@pytest.fixture()
def informes(tmp_path):
    carpeta = tmp_path / "informes" / "12345678"
    carpeta.mkdir(parents=True)
    (carpeta / "topo.pdf").write_bytes(b"%PDF-1.4 topo")
    return FuenteInformes(str(tmp_path / "informes"))


def test_sanear():
    assert FuenteInformes.sanear("./12345678/topo.pdf") == "12345678/topo.pdf"
    assert FuenteInformes.sanear("/12345678\\topo.pdf") == "12345678/topo.pdf"
    assert FuenteInformes.sanear("") == ""


def test_resolver(informes):
    assert informes.resolver("12345678/topo.pdf").name == "topo.pdf"
    assert informes.resolver("12345678/falta.pdf") is None
    assert informes.resolver("../../etc/passwd") is None
    assert FuenteInformes("").resolver("12345678/topo.pdf") is None


def test_missing_attachments_are_skipped(informes):
    adjuntos = informes.adjuntos(["12345678/topo.pdf", "12345678/falta.pdf"])
    assert [a.nombre for a in adjuntos] == ["topo.pdf"]
    assert [a.relativa for a in adjuntos] == ["12345678/topo.pdf"]


def test_construir_mensaje(informes):
    t = TransporteCorreo(ConfigSmtp(host="smtp.test", user="informes@clinic.com", password="x"))
    msg = t.construir_mensaje(
        "juan@example.com", "Resultados", "<p>Hola Juan</p>", informes.adjuntos(["12345678/topo.pdf"])
    )
    assert msg["To"] == "juan@example.com"
    assert "informes@clinic.com" in msg["From"]
    assert msg.get_body(preferencelist=("plain",)).get_content().strip() == "Hola Juan"
    adjuntos = list(msg.iter_attachments())
    assert [a.get_filename() for a in adjuntos] == ["topo.pdf"]
    assert adjuntos[0].get_content_type() == "application/pdf"


def test_transport_errors_become_fallo_envio(monkeypatch):
    def smtp_caido(*args, **kwargs):
        raise ConnectionRefusedError("sin servidor")

    monkeypatch.setattr(correo.smtplib, "SMTP", smtp_caido)
    t = TransporteCorreo(ConfigSmtp(host="smtp.test"))
    with pytest.raises(FalloEnvio):
        t.enviar("juan@example.com", "Asunto", "Cuerpo")


def test_smtp_exception_becomes_fallo_envio(monkeypatch):
    class SmtpRechaza:
        def __init__(self, *args, **kwargs):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def ehlo(self):
            pass

        def has_extn(self, nombre):
            return False

        def login(self, user, password):
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

    monkeypatch.setattr(correo.smtplib, "SMTP", SmtpRechaza)
    t = TransporteCorreo(ConfigSmtp(host="smtp.test", user="u", password="p"))
    with pytest.raises(FalloEnvio):
        t.enviar("juan@example.com", "Asunto", "Cuerpo")


def _solicitud_envio(ids, rutas=("12345678/topo.pdf",)):
    return SolicitudEnvioInforme(
        cedula="12345678",
        nombre="Juan",
        email="juan@example.com",
        asunto="Resultados",
        cuerpo="Adjuntamos sus resultados",
        report_paths=list(rutas),
        attention_ids=ids,
    )


def _atencion_simple():
    r = crear_atencion(
        SolicitudAtencion(
            appointment_date="2025-10-27",
            appointment_time="09:00",
            patient=DatosPaciente("12345678", "Juan", "Perez"),
            doctor_name="GOMEZ_MARIA_J",
            study_name="TOPOGRAFÍA CORNEAL",
        )
    )
    return r.atencion["id"]


def test_enviar_informe_marks_appointments(catalogo, informes):
    aid = _atencion_simple()
    transporte = TransporteFalso()

    assert enviar_informe(_solicitud_envio([aid]), transporte, informes) == "<msg-1@test>"
    (destinatario, _, _, adjuntos) = transporte.enviados[0]
    assert destinatario == "juan@example.com"
    assert [a.nombre for a in adjuntos] == ["topo.pdf"]

    with db_session() as s:
        a = s.get(AtencionDiaria, aid)
        assert a.email_sent is True
        assert a.result_urls == ["12345678/topo.pdf"]
        assert a.completed is True


def test_failed_send_does_not_mark(catalogo, informes):
    aid = _atencion_simple()
    with pytest.raises(FalloEnvio):
        enviar_informe(_solicitud_envio([aid]), TransporteFalso(FalloEnvio("Error enviando correo")), informes)

    with db_session() as s:
        assert not any(a.email_sent for a in s.scalars(select(AtencionDiaria)))


def test_only_attached_reports_are_recorded(catalogo, informes):
    aid = _atencion_simple()
    transporte = TransporteFalso()

    enviar_informe(_solicitud_envio([aid], ["./12345678/topo.pdf", "12345678/falta.pdf"]), transporte, informes)

    assert [a.nombre for a in transporte.enviados[0][3]] == ["topo.pdf"]
    with db_session() as s:
        a = s.get(AtencionDiaria, aid)
        assert a.result_urls == ["12345678/topo.pdf"]
        assert a.completed is True


def test_send_without_attachments_does_not_complete(catalogo, informes):
    aid = _atencion_simple()
    transporte = TransporteFalso()

    enviar_informe(_solicitud_envio([aid], ["12345678/falta.pdf"]), transporte, informes)

    assert transporte.enviados[0][3] == []
    with db_session() as s:
        a = s.get(AtencionDiaria, aid)
        assert a.email_sent is True
        assert a.result_urls == []
        assert a.completed is False
