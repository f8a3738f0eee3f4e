# callrelay/core/status.py
"""
Per-call status progression tracking.

The voice pipeline can enqueue the same status twice (webhook retries) or
deliver statuses out of order (``ringing`` after ``in-progress``). The
tracker is the gate in front of every outbound status message: a rejected
status is simply not announced.

Rules, checked in order:
1. first status seen for a call is accepted;
2. the same status as the last accepted one is rejected (also for failures);
3. a status later in ``STATUS_PROGRESSION`` is accepted;
4. a terminal-failure status (busy, no-answer, failed, canceled) is accepted;
5. everything else is rejected.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Iterator

from callrelay.core.domain import (
    CallStatus,
    STATUS_PROGRESSION,
    TERMINAL_FAILURE_STATUSES,
    status_label,
)
from callrelay.infra.logging_config import get_logger, short_sid
from callrelay.infra.metrics import NotificationMetrics

logger = get_logger(__name__)

_UNKNOWN_RANK = -1

# Failure statuses sort after ``completed`` so nothing non-terminal follows them.
_RANKS: dict[str, int] = {status.value: idx for idx, status in enumerate(STATUS_PROGRESSION)}
_RANKS.update({
    CallStatus.BUSY.value: len(STATUS_PROGRESSION),
    CallStatus.NO_ANSWER.value: len(STATUS_PROGRESSION) + 1,
    CallStatus.FAILED.value: len(STATUS_PROGRESSION) + 2,
    CallStatus.CANCELED.value: len(STATUS_PROGRESSION) + 3,
})

_FAILURE_LABELS = frozenset(s.value for s in TERMINAL_FAILURE_STATUSES)


def status_rank(label: str) -> int:
    """Position of a status label in the progression (-1 for unknown labels)."""
    return _RANKS.get(label, _UNKNOWN_RANK)


@dataclass
class CallStatusRecord:
    """Accepted status state for one call."""
    last_status: str
    last_updated: float
    status_history: list[str] = field(default_factory=list)


class StatusTracker:
    """
    In-memory status FSM keyed by call sid.

    Not thread-safe: all mutations happen on the event loop (dispatcher and
    sweeper both run there).
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._records: dict[str, CallStatusRecord] = {}

    def decide(self, call_sid: str, status: CallStatus | str) -> bool:
        """Return True and record the transition if ``status`` should be announced."""
        label = status_label(status)
        now = self._clock()
        record = self._records.get(call_sid)

        if record is None:
            self._records[call_sid] = CallStatusRecord(
                last_status=label,
                last_updated=now,
                status_history=[label],
            )
            return True

        if record.last_status == label:
            logger.debug(f"Skipping duplicate status {label} for call {short_sid(call_sid)}")
            NotificationMetrics.status_suppressed(label, "duplicate")
            return False

        if status_rank(label) > status_rank(record.last_status) or label in _FAILURE_LABELS:
            record.last_status = label
            record.last_updated = now
            record.status_history.append(label)
            return True

        logger.debug(
            f"Skipping out-of-order status {label} (current: {record.last_status}) "
            f"for call {short_sid(call_sid)}"
        )
        NotificationMetrics.status_suppressed(label, "out_of_order")
        return False

    def get(self, call_sid: str) -> CallStatusRecord | None:
        return self._records.get(call_sid)

    def evict(self, call_sid: str) -> bool:
        """Forget a call. Returns False if it was not tracked."""
        return self._records.pop(call_sid, None) is not None

    def stale_call_sids(self, ttl_seconds: float) -> list[str]:
        """Calls whose last accepted status is older than ``ttl_seconds``."""
        cutoff = self._clock() - ttl_seconds
        return [sid for sid, rec in self._records.items() if rec.last_updated < cutoff]

    def clear(self) -> None:
        self._records.clear()

    def items(self) -> Iterator[tuple[str, CallStatusRecord]]:
        return iter(list(self._records.items()))

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, call_sid: object) -> bool:
        return call_sid in self._records

    def stats(self) -> dict:
        """Status breakdown and average record age (minutes)."""
        breakdown: dict[str, int] = {}
        total_age = 0.0
        now = self._clock()

        for record in self._records.values():
            breakdown[record.last_status] = breakdown.get(record.last_status, 0) + 1
            total_age += (now - record.last_updated) / 60

        count = len(self._records)
        return {
            "total_tracked_calls": count,
            "status_breakdown": breakdown,
            "average_call_age_minutes": round(total_age / count, 1) if count else 0.0,
        }
