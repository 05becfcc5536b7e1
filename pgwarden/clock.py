# Copyright (c) 2023 Aiven, Helsinki, Finland. https://aiven.io/
"""
pgwarden - time source and deadline based polling

All waiting in pgwarden goes through a :class:`Clock` so that timeouts are
measured against monotonic deadlines (not iteration counts) and can be
exercised in tests with a fake clock.
"""
from __future__ import annotations

from typing import Callable, TypeVar

import time

T = TypeVar("T")


class Clock:
    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class Deadline:
    def __init__(self, clock: Clock, timeout: float) -> None:
        self.clock = clock
        self.timeout = timeout
        self.start = clock.monotonic()
        self.end = self.start + timeout

    @property
    def expired(self) -> bool:
        return self.clock.monotonic() >= self.end

    @property
    def remaining(self) -> float:
        return max(0.0, self.end - self.clock.monotonic())

    @property
    def elapsed(self) -> float:
        return self.clock.monotonic() - self.start


def poll_until(
    clock: Clock,
    attempt: Callable[[], T],
    done: Callable[[T], bool],
    *,
    timeout: float,
    interval: float,
) -> tuple[bool, T]:
    """Call ``attempt`` until ``done(result)`` holds or ``timeout`` seconds have passed.

    The attempt is always made at least once, and once more after the final
    sleep, so a condition that becomes true right at the deadline is not missed.

    Returns:
        A 2-tuple ``(succeeded, last_result)``.
    """
    deadline = Deadline(clock, timeout)
    while True:
        result = attempt()
        if done(result):
            return True, result
        if deadline.expired:
            return False, result
        clock.sleep(min(interval, deadline.remaining))
