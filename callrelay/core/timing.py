# callrelay/core/timing.py
"""
Per-call timestamps used for elapsed-time annotations.

Every timestamp is stamped at most once, the first time the matching status
is observed. Elapsed values are whole, non-negative seconds; anything that
cannot be computed (missing stamp, negative delta) is returned as ``None``
and the annotation is omitted.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from callrelay.core.domain import CallStatus, status_label

# Authoritative durations at or below this are treated as noise.
DURATION_NOISE_THRESHOLD = 3


@dataclass
class CallTiming:
    started: float
    initiated: Optional[float] = None
    ringing: Optional[float] = None
    answered: Optional[float] = None
    completed: Optional[float] = None


@dataclass(frozen=True)
class ElapsedTimes:
    """Annotations derived for one observed status."""
    ring_setup: Optional[int] = None      # initiated -> ringing
    ring: Optional[int] = None            # ringing -> answered, or ring time before no-answer
    duration: Optional[int] = None        # call length on completion
    duration_estimated: bool = False      # True when derived locally instead of reported
    before_busy: Optional[int] = None     # ringing/initiated -> busy


def _elapsed(now: float, since: Optional[float]) -> Optional[int]:
    if since is None:
        return None
    delta = int(round(now - since))
    return delta if delta >= 0 else None


def _positive(value) -> Optional[int]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


class TimingTracker:
    """In-memory ``CallTiming`` map keyed by call sid."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._timings: dict[str, CallTiming] = {}

    def record_and_get(
        self,
        call_sid: str,
        status: CallStatus | str,
        *,
        duration: Optional[int] = None,
        ring_duration: Optional[int] = None,
    ) -> ElapsedTimes:
        """
        Stamp the timestamp matching ``status`` and return the annotations it enables.

        Args:
            call_sid: Call identifier
            status: Status being announced
            duration: Provider-reported call duration (seconds), used on completion
            ring_duration: Provider-reported ring time (seconds), used on no-answer
        """
        now = self._clock()
        timing = self._timings.get(call_sid)
        if timing is None:
            timing = CallTiming(started=now)
            self._timings[call_sid] = timing

        parsed = CallStatus.parse(status_label(status))

        if parsed in (CallStatus.QUEUED, CallStatus.INITIATED):
            if timing.initiated is None:
                timing.initiated = now
            return ElapsedTimes()

        if parsed is CallStatus.RINGING:
            if timing.ringing is None:
                timing.ringing = now
            return ElapsedTimes(ring_setup=_elapsed(timing.ringing, timing.initiated))

        if parsed in (CallStatus.IN_PROGRESS, CallStatus.ANSWERED):
            if timing.answered is None:
                timing.answered = now
            return ElapsedTimes(ring=_elapsed(timing.answered, timing.ringing))

        if parsed is CallStatus.COMPLETED:
            if timing.completed is None:
                timing.completed = now
            reported = _positive(duration)
            if reported is not None and reported > DURATION_NOISE_THRESHOLD:
                return ElapsedTimes(duration=reported)
            derived = _elapsed(timing.completed, timing.answered)
            if derived is not None and derived > DURATION_NOISE_THRESHOLD:
                return ElapsedTimes(duration=derived, duration_estimated=True)
            return ElapsedTimes()

        if parsed is CallStatus.NO_ANSWER:
            ring = _positive(ring_duration)
            if ring is None:
                ring = _elapsed(now, timing.ringing)
            if ring is None:
                ring = _elapsed(now, timing.initiated)
            return ElapsedTimes(ring=ring)

        if parsed is CallStatus.BUSY:
            since = timing.ringing if timing.ringing is not None else timing.initiated
            return ElapsedTimes(before_busy=_elapsed(now, since))

        return ElapsedTimes()

    def get(self, call_sid: str) -> CallTiming | None:
        return self._timings.get(call_sid)

    def evict(self, call_sid: str) -> bool:
        return self._timings.pop(call_sid, None) is not None

    def clear(self) -> None:
        self._timings.clear()

    def __len__(self) -> int:
        return len(self._timings)

    def __contains__(self, call_sid: object) -> bool:
        return call_sid in self._timings
