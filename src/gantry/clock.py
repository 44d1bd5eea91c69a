"""Injectable wall clock. Lease and approval deadlines are compared against it."""

from __future__ import annotations

import datetime
from typing import Callable

Clock = Callable[[], datetime.datetime]


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)
