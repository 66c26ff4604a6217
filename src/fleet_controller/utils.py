from __future__ import annotations

import datetime
import sys
import time

from fleet_controller.const import LOCAL_TZ


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def epoch_ms_to_local(epoch_ms: int) -> datetime.datetime:
    """Convert epoch milliseconds to an aware datetime in the host's local timezone."""
    utc_dt = datetime.datetime.fromtimestamp(epoch_ms / 1000, tz=datetime.UTC)
    return utc_dt.astimezone(LOCAL_TZ)


def check_python_version() -> None:
    if sys.version_info < (3, 12):
        msg = f"Fleet Controller requires Python 3.12 or newer, found {sys.version.split()[0]}"
        raise RuntimeError(msg)
