"""Error taxonomy for the commit gate.

Every error carries a dotted machine code and a context mapping that the
reporting layer can render. Context values must never hold key material
or configured secrets.
"""

from __future__ import annotations

from typing import Any


class CommitGateError(Exception):
    code = "commit_gate.error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "context": dict(self.context),
        }


class ConfigError(CommitGateError):
    code = "commit_gate.config.invalid"


class PolicyParseError(CommitGateError):
    code = "commit_gate.policy.invalid"

    def __init__(self, message: str, line_number: int | None = None, **context: Any) -> None:
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message, line_number=line_number, **context)
        self.line_number = line_number


class RangeResolutionError(CommitGateError):
    code = "commit_gate.range.unresolvable"


class ShallowHistoryError(RangeResolutionError):
    code = "commit_gate.range.shallow_history"
    hint = "fetch full history before running the gate (e.g. actions/checkout with fetch-depth: 0)"

    def __init__(self, message: str, **context: Any) -> None:
        context.setdefault("hint", self.hint)
        super().__init__(message, **context)


class TransientExternalError(CommitGateError):
    code = "commit_gate.external.transient"


class ExternalCommandError(CommitGateError):
    code = "commit_gate.external.failed"


class RateLimitExceededError(CommitGateError):
    code = "commit_gate.rate_limit.exceeded"


class DeadlineExceededError(CommitGateError):
    code = "commit_gate.deadline.exceeded"


class RefUpdateRejectedError(CommitGateError):
    code = "commit_gate.merge.write_rejected"

    def __init__(self, message: str, protected: bool = False, **context: Any) -> None:
        super().__init__(message, protected=protected, **context)
        self.protected = protected


class AuditLogClosedError(CommitGateError):
    code = "commit_gate.audit.closed"


class AuditWriteError(CommitGateError):
    code = "commit_gate.audit.write_failed"


class RetriesExhaustedError(CommitGateError):
    code = "commit_gate.external.retries_exhausted"
