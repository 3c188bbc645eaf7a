from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import pytest

FIXED_UTC = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


@pytest.fixture
def utc_clock() -> Callable[[], datetime]:
    """Wall clock frozen at 2024-01-02 03:04:05 UTC."""

    return lambda: FIXED_UTC


@pytest.fixture
def write_config(tmp_path: Path) -> Callable[[str], Path]:
    """Write a sooss.cfg under tmp_path whose data_dir is tmp_path/data."""

    def factory(extra: str = "") -> Path:
        config_path = tmp_path / "sooss.cfg"
        config_path.write_text(
            f"[paths]\ndata_dir = {tmp_path / 'data'}\n" + extra, encoding="utf-8"
        )
        return config_path

    return factory
