import pytest

from sooss.telemetry.record import (
    CHANNEL_FIELDS,
    RECORD_SIZE,
    Channel,
    TelemetryRecord,
    Validity,
    field_spec,
)


def test_new_record_is_all_off_and_zero() -> None:
    record = TelemetryRecord()

    assert record.timestamp_ms == 0
    assert set(record.validity.values()) == {Validity.OFF}
    assert record.values["battery_mv"] == 0.0
    assert record.values["co2_ppm"] == 0
    assert record.values["sound_psd"] == bytes(32)


def test_record_packs_to_fixed_size() -> None:
    assert RECORD_SIZE == 144
    assert len(TelemetryRecord().pack()) == RECORD_SIZE


def test_set_channel_marks_on_and_coerces_values() -> None:
    record = TelemetryRecord()

    record.set_channel(Channel.CO2, {"co2_ppm": 70000})
    record.set_channel(Channel.MICROPHONE, {"sound_psd": b"\x01\x02"})

    assert record.validity[Channel.CO2] is Validity.ON
    assert record.values["co2_ppm"] == 0xFFFF
    assert record.values["sound_psd"] == b"\x01\x02" + bytes(30)


def test_set_channel_rejects_fields_owned_by_other_channels() -> None:
    record = TelemetryRecord()

    with pytest.raises(KeyError):
        record.set_channel(Channel.BATTERY, {"co2_ppm": 400})

    assert record.validity[Channel.BATTERY] is Validity.OFF
    assert record.values["co2_ppm"] == 0


def test_reset_channel_zeroes_owned_fields_only() -> None:
    record = TelemetryRecord()
    record.set_channel(Channel.CLIMATE, {"climate_temp_c": 21.5, "climate_humidity_pct": 40.0})
    record.set_channel(Channel.BATTERY, {"battery_mv": 3700.0})

    record.reset_channel(Channel.CLIMATE, Validity.ERROR)

    assert record.validity[Channel.CLIMATE] is Validity.ERROR
    assert record.channel_values(Channel.CLIMATE) == {
        "climate_temp_c": 0.0,
        "climate_humidity_pct": 0.0,
    }
    assert record.values["battery_mv"] == 3700.0


def test_unpack_restores_packed_record() -> None:
    record = TelemetryRecord(timestamp_ms=1_700_000_000_123)
    record.set_channel(Channel.COSMIC_WATCH_1, {"cw1_event": 12, "cw1_rate": 137})
    record.reset_channel(Channel.O2, Validity.ERROR)

    restored = TelemetryRecord.unpack(record.pack())

    assert restored.timestamp_ms == 1_700_000_000_123
    assert restored.validity[Channel.COSMIC_WATCH_1] is Validity.ON
    assert restored.validity[Channel.O2] is Validity.ERROR
    assert restored.values["cw1_event"] == 12
    assert restored.values["cw1_rate"] == 137


def test_unpack_rejects_wrong_size() -> None:
    with pytest.raises(ValueError):
        TelemetryRecord.unpack(b"\x00" * (RECORD_SIZE - 1))


def test_every_channel_owns_at_least_one_field() -> None:
    for channel in Channel:
        assert CHANNEL_FIELDS[channel]
    assert field_spec("cw2_elapsed_ms").fmt == "I"
