from pathlib import Path

import pytest

from sooss import cli
from sooss.state_file import load_state


def test_missing_config_exits_with_status_1(tmp_path: Path, capsys) -> None:
    status = cli.main(["-c", str(tmp_path / "absent.cfg"), "show-config"])

    assert status == 1
    assert "FATAL" in capsys.readouterr().err


def test_show_config_prints_sections(write_config, capsys) -> None:
    config_path = write_config("[serial]\ncw1_serial_device = /dev/ttyUSB3\n")

    assert cli.main(["-c", str(config_path), "show-config"]) == 0

    output = capsys.readouterr().out
    assert "[serial]" in output
    assert "cw1_serial_device = /dev/ttyUSB3" in output


def test_data_dir_locates_config(tmp_path: Path, capsys) -> None:
    (tmp_path / "sooss.cfg").write_text("", encoding="utf-8")

    assert cli.main(["-d", str(tmp_path), "show-state"]) == 0

    output = capsys.readouterr().out
    assert str(tmp_path / "sooss.state") in output
    assert "sensors_enabled=1" in output


def test_set_state_updates_file(write_config, tmp_path: Path, capsys) -> None:
    config_path = write_config()

    status = cli.main(
        ["-c", str(config_path), "set-state", "sensors_enabled=0", "period_to_send_telem_in_seconds=30"]
    )

    assert status == 0
    state = load_state(tmp_path / "data" / "sooss.state")
    assert state.sensors_enabled is False
    assert state.period_to_send_telem_in_seconds == 30
    assert "sensors_enabled=0" in capsys.readouterr().out


@pytest.mark.parametrize("assignment", ["bogus=1", "sensors_enabled", "co2_enabled=on"])
def test_set_state_rejects_bad_assignments(write_config, assignment: str, capsys) -> None:
    assert cli.main(["-c", str(write_config()), "set-state", assignment]) == 2
    assert "ERROR" in capsys.readouterr().err


def test_start_passes_flags_to_app(write_config, monkeypatch) -> None:
    calls = []

    class _FakeApp:
        @staticmethod
        def start(config, *, verbose, calibration_mode):
            calls.append((config.path, verbose, calibration_mode))
            return 1

    monkeypatch.setattr(cli, "SoossApp", _FakeApp)
    config_path = write_config()

    assert cli.main(["-c", str(config_path), "-v", "-t", "start"]) == 1
    assert calls == [(config_path, True, True)]
