"""Append-only, secret-masked security event log.

Lifecycle is explicit: ``open()`` before the first ``record()``, ``flush()``
to push buffered events to the sinks, ``close()`` at teardown. Appends are
serialised through one lock so concurrent verifiers never interleave
partial records.
"""

from __future__ import annotations

import dataclasses
import json
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Literal, Protocol, Sequence

from commit_gate.errors import AuditLogClosedError
from commit_gate.logger import compile_secret_patterns, log_event, mask_secrets
from commit_gate.resilience import RateLimiter

Severity = Literal["info", "warning", "high"]
SEVERITIES: tuple[Severity, ...] = ("info", "warning", "high")

SECURITY_EVENT_CATEGORY = "security-event"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


@dataclass(frozen=True)
class SecurityEvent:
    timestamp: str
    severity: Severity
    category: str
    masked_detail: str

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


class AuditSink(Protocol):
    def write(self, events: Sequence[SecurityEvent]) -> None: ...

    def close(self) -> None: ...


class MemorySink:
    def __init__(self) -> None:
        self.events: list[SecurityEvent] = []
        self.closed = False

    def write(self, events: Sequence[SecurityEvent]) -> None:
        self.events.extend(events)

    def close(self) -> None:
        self.closed = True


class JsonLinesSink:
    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)

    def write(self, events: Sequence[SecurityEvent]) -> None:
        if not events:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            for event in events:
                f.write(json.dumps(event.to_dict(), sort_keys=True) + "\n")
            f.flush()
            os.fsync(f.fileno())

    def close(self) -> None:
        return None


class AuditLog:
    def __init__(
        self,
        sinks: Sequence[AuditSink] | None = None,
        *,
        secret_patterns: Sequence[str] | None = None,
        secrets: Sequence[str] = (),
        alert: Callable[[SecurityEvent], None] | None = None,
        limiter: RateLimiter | None = None,
        clock: Callable[[], str] = utc_timestamp,
    ) -> None:
        self.sinks = list(sinks) if sinks is not None else [MemorySink()]
        self._patterns = compile_secret_patterns(secret_patterns)
        self._secrets = tuple(secret for secret in secrets if secret)
        self._alert = alert
        self._limiter = limiter
        self._clock = clock
        self._lock = threading.Lock()
        self._buffer: list[SecurityEvent] = []
        self._history: list[SecurityEvent] = []
        self._state = "new"
        self.dropped = 0
        self.suppressed_alerts = 0
        self.alert_failures = 0

    def __enter__(self) -> "AuditLog":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._state == "open"

    @property
    def events(self) -> tuple[SecurityEvent, ...]:
        with self._lock:
            return tuple(self._history)

    def open(self) -> "AuditLog":
        with self._lock:
            if self._state == "closed":
                raise AuditLogClosedError("audit log already closed")
            self._state = "open"
        return self

    def mask(self, text: Any) -> str:
        return mask_secrets(text, self._patterns, self._secrets)

    def record(self, event: SecurityEvent) -> SecurityEvent | None:
        if event.severity not in SEVERITIES:
            raise ValueError(f"commit_gate.audit.invalid severity={event.severity}")
        masked = dataclasses.replace(
            event,
            category=self.mask(event.category),
            masked_detail=self.mask(event.masked_detail),
        )
        within_budget = self._limiter is None or self._limiter.try_acquire(SECURITY_EVENT_CATEGORY)

        with self._lock:
            if self._state != "open":
                raise AuditLogClosedError("audit log is not open", category=masked.category)
            if not within_budget and masked.severity == "info":
                self.dropped += 1
                return None
            self._buffer.append(masked)
            self._history.append(masked)
            alert = masked.severity == "high" and self._alert is not None
            if alert and not within_budget:
                self.suppressed_alerts += 1
                alert = False

        if alert:
            try:
                self._alert(masked)
            except Exception as exc:
                self.alert_failures += 1
                log_event("audit", f"alert_failed category={masked.category} error={self.mask(exc)}")
        return masked

    def emit(self, severity: Severity, category: str, detail: str) -> SecurityEvent | None:
        return self.record(
            SecurityEvent(
                timestamp=self._clock(),
                severity=severity,
                category=category,
                masked_detail=detail,
            )
        )

    def flush(self) -> None:
        with self._lock:
            pending, self._buffer = self._buffer, []
            try:
                for sink in self.sinks:
                    sink.write(pending)
            except OSError:
                self._buffer = pending + self._buffer
                raise

    def close(self) -> None:
        if self._state == "closed":
            return
        self.flush()
        with self._lock:
            self._state = "closed"
            for sink in self.sinks:
                sink.close()
        if self.dropped or self.suppressed_alerts:
            log_event(
                "audit",
                f"closed dropped={self.dropped} suppressed_alerts={self.suppressed_alerts}",
            )
