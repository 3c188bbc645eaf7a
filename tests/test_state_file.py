import logging
from pathlib import Path

from sooss.state_file import (
    OperationalState,
    StateReconciler,
    load_state,
    save_state,
)
from sooss.telemetry.record import RECORD_SIZE, Channel


class _FakeMonotonic:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_missing_file_keeps_current_state(tmp_path: Path) -> None:
    current = OperationalState(period_to_send_telem_in_seconds=30)

    assert load_state(tmp_path / "absent.state", current) is current
    assert load_state(tmp_path / "absent.state") == OperationalState()


def test_parses_known_keys(tmp_path: Path) -> None:
    path = tmp_path / "sooss.state"
    path.write_text(
        "# operator overrides\n"
        "sensors_enabled=1\n"
        "co2_enabled = 0\n"
        "period_to_send_telem_in_seconds=30\n"
        "wod_max_file_size=2048\n",
        encoding="utf-8",
    )

    state = load_state(path)

    assert state.sensors_enabled is True
    assert state.co2_enabled is False
    assert state.period_to_send_telem_in_seconds == 30
    assert state.wod_max_file_size == 2048


def test_missing_key_preserves_previous_value(tmp_path: Path) -> None:
    path = tmp_path / "sooss.state"
    path.write_text("sensors_enabled=0\n", encoding="utf-8")
    current = OperationalState(period_to_send_telem_in_seconds=30)

    state = load_state(path, current)

    assert state.sensors_enabled is False
    assert state.period_to_send_telem_in_seconds == 30


def test_malformed_file_is_a_no_op(tmp_path: Path, caplog) -> None:
    path = tmp_path / "sooss.state"
    path.write_text(
        "garbage\nsensors_enabled=yes\nmystery_key=4\n=\n", encoding="utf-8"
    )
    current = OperationalState(mic_enabled=False, sensor_log_level=1)

    with caplog.at_level(logging.WARNING, logger="sooss.state_file"):
        state = load_state(path, current)

    assert state == current
    messages = " ".join(record.getMessage() for record in caplog.records)
    assert "mystery_key" in messages
    assert "sensors_enabled" in messages


def test_unreadable_file_keeps_current_state(tmp_path: Path) -> None:
    current = OperationalState(cosmic_watch_enabled=False)

    assert load_state(tmp_path, current) is current


def test_values_are_clamped(tmp_path: Path) -> None:
    path = tmp_path / "sooss.state"
    path.write_text(
        "period_to_send_telem_in_seconds=0\nwod_max_file_size=10\nsensor_log_level=9\n",
        encoding="utf-8",
    )

    state = load_state(path)

    assert state.period_to_send_telem_in_seconds == 1
    assert state.wod_max_file_size == RECORD_SIZE
    assert state.sensor_log_level == 3


def test_save_state_round_trips_atomically(tmp_path: Path) -> None:
    path = tmp_path / "sooss.state"
    state = OperationalState(magnetometer_enabled=False, period_to_store_wod_in_seconds=120)

    save_state(path, state)

    assert load_state(path) == state
    assert sorted(item.name for item in tmp_path.iterdir()) == ["sooss.state"]
    assert "magnetometer_enabled=0" in path.read_text(encoding="utf-8")


def test_channel_enabled_rules() -> None:
    state = OperationalState(co2_enabled=False)

    assert state.channel_enabled(Channel.BATTERY)
    assert not state.channel_enabled(Channel.CO2)
    assert not state.channel_enabled(Channel.GAS_REFERENCE)
    assert state.channel_enabled(Channel.GAS_REFERENCE, calibration=True)

    master_off = OperationalState(sensors_enabled=False)
    assert not any(master_off.channel_enabled(channel, calibration=True) for channel in Channel)


def test_reconciler_reloads_on_interval_and_request(tmp_path: Path) -> None:
    path = tmp_path / "sooss.state"
    path.write_text("period_to_send_telem_in_seconds=20\n", encoding="utf-8")
    clock = _FakeMonotonic()
    reconciler = StateReconciler(
        path, interval_seconds=10.0, monotonic=clock, logger_name="sooss-test-reconciler"
    )

    assert reconciler.maybe_reload() is True
    assert reconciler.state.period_to_send_telem_in_seconds == 20

    path.write_text("period_to_send_telem_in_seconds=40\n", encoding="utf-8")
    clock.now += 5.0
    assert reconciler.maybe_reload() is False
    assert reconciler.state.period_to_send_telem_in_seconds == 20

    reconciler.request_reload()
    assert reconciler.maybe_reload() is True
    assert reconciler.state.period_to_send_telem_in_seconds == 40

    path.write_text("period_to_send_telem_in_seconds=50\n", encoding="utf-8")
    clock.now += 10.0
    assert reconciler.maybe_reload() is True
    assert reconciler.state.period_to_send_telem_in_seconds == 50


def test_reconciler_applies_sensor_log_level(tmp_path: Path) -> None:
    path = tmp_path / "sooss.state"
    path.write_text("sensor_log_level=3\n", encoding="utf-8")
    reconciler = StateReconciler(path, logger_name="sooss-test-levels")

    reconciler.reload()
    assert logging.getLogger("sooss-test-levels").level == logging.DEBUG

    path.write_text("sensor_log_level=0\n", encoding="utf-8")
    reconciler.reload()
    assert logging.getLogger("sooss-test-levels").level == logging.ERROR


def test_default_log_level_is_quiet(tmp_path: Path) -> None:
    reconciler = StateReconciler(tmp_path / "absent.state", logger_name="sooss-test-quiet")

    reconciler.reload()

    assert OperationalState().sensor_log_level == 1
    assert logging.getLogger("sooss-test-quiet").level == logging.WARNING
