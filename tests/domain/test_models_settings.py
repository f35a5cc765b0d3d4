from __future__ import annotations

import pytest

from bayoffice.domain.models import (
    AppointmentSettings,
    BreakTime,
    DaySchedule,
    Mutation,
    OwnerIdentity,
    RealtimeEvent,
    settings_row_to_ui,
)


def test_settings_por_defecto_coinciden_con_agenda_laboral() -> None:
    settings = AppointmentSettings()

    assert settings.working_hours.start == "09:00"
    assert settings.working_hours.end == "18:00"
    assert settings.working_days == ("Mon", "Tue", "Wed", "Thu", "Fri")
    assert settings.slot_duration == 30
    assert settings.buffer_time == 5
    assert settings.breaks == BreakTime(start="13:00", end="14:00", enabled=False)


def test_from_ui_dict_rellena_campos_ausentes_con_defaults() -> None:
    settings = AppointmentSettings.from_ui_dict({"workingHours": {"start": "08:00"}, "bufferTime": 0})

    assert settings.working_hours.start == "08:00"
    assert settings.working_hours.end == "18:00"
    assert settings.buffer_time == 0
    assert settings.slot_duration == 30


@pytest.mark.parametrize(
    "payload",
    [
        {"workingHours": "09-18", "slotDuration": "abc"},
        {"breaks": ["13:00"], "schedule": "Mon", "version": "v2"},
        {"workingDays": "Mon,Tue", "holidays": 3, "bufferTime": {}},
    ],
)
def test_from_ui_dict_con_forma_inesperada_usa_defaults(payload: dict) -> None:
    settings = AppointmentSettings.from_ui_dict(payload)

    assert settings.working_hours.start == "09:00"
    assert settings.slot_duration == 30
    assert settings.buffer_time == 5
    assert settings.working_days == ("Mon", "Tue", "Wed", "Thu", "Fri")
    assert settings.holidays == ()
    assert settings.breaks == BreakTime()
    assert settings.schedule == {}
    assert settings.version == 1


def test_storage_row_embebe_schedule_dentro_de_breaks() -> None:
    settings = AppointmentSettings.from_ui_dict(
        {
            "breaks": {"start": "12:00", "end": "12:30", "enabled": True},
            "schedule": {"Mon": {"enabled": False, "start": "10:00", "end": "14:00"}, "Funday": {}},
        }
    )

    row = settings.to_storage_row("owner-1")

    assert row["user_id"] == "owner-1"
    assert row["breaks"]["enabled"] is True
    assert row["breaks"]["schedule"] == {"Mon": {"enabled": False, "start": "10:00", "end": "14:00"}}
    assert AppointmentSettings.from_storage_row(row) == settings


def test_settings_row_to_ui_solo_emite_claves_presentes() -> None:
    ui = settings_row_to_ui({"working_hours_start": "07:00", "slot_duration": 45})

    assert ui == {"workingHours": {"start": "07:00"}, "slotDuration": 45}
    assert settings_row_to_ui(None) == {}


def test_day_schedule_tolera_payload_invalido() -> None:
    assert DaySchedule.from_dict("roto") == DaySchedule()


def test_mutation_serializa_con_claves_de_cola() -> None:
    mutation = Mutation(
        table="appointments",
        action="update",
        data={"status": "confirmed"},
        target_id="A",
        queue_id="q1",
        enqueued_at="2025-03-01T10:00:00Z",
    )

    payload = mutation.to_dict()

    assert payload == {
        "table": "appointments",
        "action": "update",
        "data": {"status": "confirmed"},
        "targetId": "A",
        "id": "q1",
        "timestamp": "2025-03-01T10:00:00Z",
        "retryCount": 0,
    }
    assert Mutation.from_dict(payload) == mutation
    assert mutation.with_retry().retry_count == 1


@pytest.mark.parametrize(
    "payload",
    [
        {"table": "invoices", "action": "insert"},
        {"table": "staff", "action": "merge"},
    ],
)
def test_mutation_from_dict_rechaza_tabla_o_accion_desconocida(payload: dict) -> None:
    with pytest.raises(ValueError):
        Mutation.from_dict(payload)


def test_owner_identity_y_evento_realtime() -> None:
    assert OwnerIdentity(id="u1").is_cloud is True
    assert OwnerIdentity(id="0000-demo", session_kind="mock").is_cloud is False
    assert RealtimeEvent(table="staff", action="delete", record={"id": 7}).record_id == "7"
    assert RealtimeEvent(table="staff", action="delete", record={}).record_id is None
