from __future__ import annotations

import logging

import resend

logger = logging.getLogger(__name__)

STATUS_SUBJECT = "Actualización de su cita"


class ResendNotificationDispatcher:
    """Envía avisos de cambio de estado por email a través de Resend."""

    def __init__(self, api_key: str, sender: str) -> None:
        self._api_key = api_key
        self._sender = sender

    def dispatch(self, contact_address: str, message: str) -> None:
        if "@" not in contact_address:
            logger.warning("notification_skipped_non_email contact=%s", contact_address)
            return
        resend.api_key = self._api_key
        response = resend.Emails.send(
            {
                "from": self._sender,
                "to": [contact_address],
                "subject": STATUS_SUBJECT,
                "text": message,
            }
        )
        logger.info("notification_sent contact=%s response=%s", contact_address, response)


class LoggingNotificationDispatcher:
    """Dispatcher de sesiones demo: deja constancia en el log y no envía nada."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def dispatch(self, contact_address: str, message: str) -> None:
        self.sent.append((contact_address, message))
        logger.info("notification_logged contact=%s message=%s", contact_address, message)
