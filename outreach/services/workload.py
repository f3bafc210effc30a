from __future__ import annotations

import importlib
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, Union

from outreach.core.preferences import SchedulePreferences


OUTCOME_SUCCESS = "success"
OUTCOME_SOFT_STOP = "soft_stop"
OUTCOME_FAILURE = "failure"


@dataclass(frozen=True)
class Outcome:
    kind: str
    batch_id: Optional[int] = None
    contacts_processed: Optional[int] = None
    reason: str = ""
    error: Optional[BaseException] = None

    @classmethod
    def success(cls, batch_id: int | None = None, contacts_processed: int | None = None) -> "Outcome":
        return cls(kind=OUTCOME_SUCCESS, batch_id=batch_id, contacts_processed=contacts_processed)

    @classmethod
    def soft_stop(cls, reason: str) -> "Outcome":
        return cls(kind=OUTCOME_SOFT_STOP, reason=str(reason))

    @classmethod
    def failure(cls, error: BaseException | str) -> "Outcome":
        exc = error if isinstance(error, BaseException) else RuntimeError(str(error))
        return cls(kind=OUTCOME_FAILURE, reason=str(exc) or type(exc).__name__, error=exc)

    @property
    def ok(self) -> bool:
        return self.kind != OUTCOME_FAILURE

    @property
    def error_message(self) -> str:
        if self.kind != OUTCOME_FAILURE:
            return ""
        return self.reason or "Unknown error"


class WorkloadProcessor(Protocol):
    def process(self, user_id: int) -> Outcome | None: ...


ProcessorLike = Union[WorkloadProcessor, Callable[[int], Optional[Outcome]]]


class _CallableProcessor:
    def __init__(self, fn: Callable[[int], Optional[Outcome]]) -> None:
        self._fn = fn

    def process(self, user_id: int) -> Outcome | None:
        return self._fn(user_id)


def as_processor(obj: ProcessorLike) -> WorkloadProcessor:
    if hasattr(obj, "process"):
        return obj  # type: ignore[return-value]
    if callable(obj):
        return _CallableProcessor(obj)
    raise TypeError(f"not a workload processor: {obj!r}")


class UnconfiguredWorkload:
    """Placeholder used when no workload is wired in; every run is a soft-stop."""

    def process(self, user_id: int) -> Outcome:
        return Outcome.soft_stop("No workload processor configured")


class PreconditionGate:
    """
    Wraps a processor and turns missing preconditions into soft-stops:
    outreach disabled, or the user on vacation right now.
    """

    def __init__(
        self,
        delegate: ProcessorLike,
        preferences_lookup: Callable[[int], Optional[SchedulePreferences]],
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._delegate = as_processor(delegate)
        self._lookup = preferences_lookup
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def process(self, user_id: int) -> Outcome | None:
        prefs = self._lookup(user_id)
        if prefs is None or not prefs.enabled:
            return Outcome.soft_stop("User has disabled outreach")
        now = self._clock()
        if prefs.on_vacation(now):
            end = prefs.vacation_end.date().isoformat() if prefs.vacation_end else "?"
            return Outcome.soft_stop(f"User on vacation until {end}")
        return self._delegate.process(user_id)


def load_processor(path: str, **kwargs: Any) -> WorkloadProcessor:
    """
    Resolve `package.module:attribute`. A class (or any factory) is called
    with `kwargs`; an instance or plain function is used as-is.
    """
    module_name, _, attr = (path or "").strip().partition(":")
    if not module_name or not attr:
        raise ValueError(f"workload path must look like 'module:attribute', got {path!r}")
    target = getattr(importlib.import_module(module_name), attr)
    if isinstance(target, type):
        target = target(**kwargs)
    return as_processor(target)
