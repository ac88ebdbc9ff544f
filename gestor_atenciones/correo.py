from __future__ import annotations

import mimetypes
import re
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from pathlib import Path
from typing import Sequence

from .atenciones import marcar_enviadas
from .config import ConfigSmtp
from .errores import FalloEnvio
from .logging_config import get_logger

logger = get_logger(__name__)

_TAG_RE = re.compile(r"<[^>]+>")


@dataclass(frozen=True)
class Adjunto:
    nombre: str
    ruta: Path
    relativa: str  # ruta saneada, relativa a REPORTS_BASE_PATH


class FuenteInformes:
    """Resuelve rutas lógicas de informes contra una carpeta base configurada."""

    def __init__(self, base_path: str) -> None:
        self.base = Path(base_path).resolve() if base_path else None
        if self.base is None:
            logger.warning("REPORTS_BASE_PATH no está definido: no se podrán adjuntar ni servir informes")

    @staticmethod
    def sanear(relativa: str) -> str:
        """Quita '/' y '.' iniciales y normaliza separadores Windows."""
        rel = str(relativa or "").replace("\\", "/")
        return re.sub(r"^[./]+", "", rel)

    def resolver(self, relativa: str) -> Path | None:
        """Ruta absoluta del informe si existe dentro de la base; None en otro caso."""
        if self.base is None:
            return None
        ruta = (self.base / self.sanear(relativa)).resolve()
        if ruta != self.base and self.base not in ruta.parents:
            logger.warning("Ruta fuera de la carpeta de informes: %s", relativa)
            return None
        if not ruta.is_file():
            return None
        return ruta

    def adjuntos(self, rutas: Sequence[str]) -> list[Adjunto]:
        """Solo los informes que existen; los que faltan se registran y se omiten."""
        encontrados: list[Adjunto] = []
        for rel in rutas:
            ruta = self.resolver(rel)
            if ruta is None:
                logger.warning("Archivo no encontrado: %s", rel)
                continue
            encontrados.append(Adjunto(nombre=ruta.name, ruta=ruta, relativa=self.sanear(rel)))
        return encontrados


class TransporteCorreo:
    """Envío SMTP con texto plano + alternativa HTML y adjuntos."""

    def __init__(self, config: ConfigSmtp) -> None:
        self.config = config
        if not config.completa:
            logger.warning("SMTP_HOST / SMTP_USER / SMTP_PASS no están completos")

    def construir_mensaje(
        self, destinatario: str, asunto: str, cuerpo: str, adjuntos: Sequence[Adjunto] = ()
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = formataddr(("Informes Clínica", self.config.direccion_remitente))
        msg["To"] = destinatario
        msg["Subject"] = asunto
        msg["Message-ID"] = make_msgid()

        msg.set_content(_TAG_RE.sub("", cuerpo))
        html = cuerpo if "<" in cuerpo else cuerpo.replace("\n", "<br/>")
        msg.add_alternative(html, subtype="html")

        for adj in adjuntos:
            tipo, _ = mimetypes.guess_type(adj.nombre)
            maintype, subtype = (tipo or "application/octet-stream").split("/", 1)
            msg.add_attachment(adj.ruta.read_bytes(), maintype=maintype, subtype=subtype, filename=adj.nombre)
        return msg

    def enviar(
        self, destinatario: str, asunto: str, cuerpo: str, adjuntos: Sequence[Adjunto] = ()
    ) -> str:
        """Devuelve el Message-ID asignado; FalloEnvio ante cualquier error de transporte."""
        try:
            msg = self.construir_mensaje(destinatario, asunto, cuerpo, adjuntos)
            cls = smtplib.SMTP_SSL if self.config.secure else smtplib.SMTP
            with cls(self.config.host or "localhost", self.config.port, timeout=30) as smtp:
                smtp.ehlo()
                if not self.config.secure and smtp.has_extn("starttls"):
                    smtp.starttls()
                    smtp.ehlo()
                if self.config.user and self.config.password:
                    smtp.login(self.config.user, self.config.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Error enviando correo a %s: %s", destinatario, e)
            raise FalloEnvio("Error enviando correo") from e

        logger.info("Correo enviado a %s. messageId=%s", destinatario, msg["Message-ID"])
        return msg["Message-ID"]


@dataclass(frozen=True)
class SolicitudEnvioInforme:
    cedula: str
    nombre: str
    email: str
    asunto: str
    cuerpo: str
    report_paths: list[str]
    attention_ids: list[str]
    telefono: str | None = None
    servicios: tuple[str, ...] = ()


def enviar_informe(
    solicitud: SolicitudEnvioInforme, transporte: TransporteCorreo, fuente: FuenteInformes
) -> str:
    """
    Envía los informes al paciente y, si el envío fue aceptado, marca las
    atenciones como enviadas (lo que puede completar al paciente).
    En result_urls solo quedan los informes efectivamente adjuntados.
    """
    adjuntos = fuente.adjuntos(solicitud.report_paths)
    if not adjuntos:
        logger.warning("No se adjuntó ningún archivo para el envío a %s", solicitud.email)

    message_id = transporte.enviar(solicitud.email, solicitud.asunto, solicitud.cuerpo, adjuntos)
    marcar_enviadas(solicitud.attention_ids, [a.relativa for a in adjuntos])
    return message_id
