from __future__ import annotations

import resend

from bayoffice.infrastructure.notifications import (
    STATUS_SUBJECT,
    LoggingNotificationDispatcher,
    ResendNotificationDispatcher,
)


def test_resend_envia_email_con_remitente_configurado(monkeypatch) -> None:
    sent: list[dict] = []
    monkeypatch.setattr(resend.Emails, "send", lambda params: sent.append(params) or {"id": "email-1"})
    monkeypatch.setattr(resend, "api_key", None, raising=False)

    ResendNotificationDispatcher("re_test", "citas@bayoffice.app").dispatch("ana@example.com", "Cita confirmada")

    assert sent == [
        {
            "from": "citas@bayoffice.app",
            "to": ["ana@example.com"],
            "subject": STATUS_SUBJECT,
            "text": "Cita confirmada",
        }
    ]
    assert resend.api_key == "re_test"


def test_resend_ignora_contactos_que_no_son_email(monkeypatch) -> None:
    sent: list[dict] = []
    monkeypatch.setattr(resend.Emails, "send", lambda params: sent.append(params))

    ResendNotificationDispatcher("re_test", "citas@bayoffice.app").dispatch("600000000", "Cita confirmada")

    assert sent == []


def test_dispatcher_de_log_registra_envios() -> None:
    dispatcher = LoggingNotificationDispatcher()

    dispatcher.dispatch("600000000", "Cita cancelada")

    assert dispatcher.sent == [("600000000", "Cita cancelada")]
