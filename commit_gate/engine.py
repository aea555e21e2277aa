"""Top-level gate run: authenticate the range, then advance the base ref.

``run_gate`` never raises for gate failures. Every outcome, including
policy errors and deadline expiry, is folded into a ``GateResult`` so the
caller always has something to report.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Literal

from commit_gate.audit_log import AuditLog, JsonLinesSink, MemorySink
from commit_gate.authenticator import as_observation, authenticate, skipped_verdict, verdict_digest
from commit_gate.config import GateConfig
from commit_gate.errors import (
    AuditWriteError,
    CommitGateError,
    ConfigError,
    DeadlineExceededError,
    PolicyParseError,
)
from commit_gate.forge_client import ForgeClient
from commit_gate.git_client import GitRepository, VersionControl
from commit_gate.logger import log_event
from commit_gate.merge import MergeEngine, MergePlan, RefWriter
from commit_gate.models import AuthenticationVerdict, AuthStatus
from commit_gate.resilience import Deadline, RateLimiter, Resilience, RetryPolicy
from commit_gate.signers import load_signers

MergeStatus = Literal["success", "failed", "skipped", "blocked"]


@dataclass(frozen=True)
class GateResult:
    auth_status: AuthStatus
    merge_status: MergeStatus
    failed_commits: tuple[dict[str, str], ...] = ()
    merge_sha: str | None = None
    blocking_reason: str | None = None
    error: dict[str, Any] | None = None
    verdict_digest: str | None = None
    base: str | None = None
    head: str | None = None
    policy_hash: str | None = None
    comment_mode: str = "on-error"
    results: tuple[dict[str, Any], ...] = field(default=(), compare=False)
    audit_error: dict[str, Any] | None = field(default=None, compare=False)

    @property
    def passed(self) -> bool:
        return self.auth_status != "failed" and self.merge_status in ("success", "skipped")

    @property
    def should_comment(self) -> bool:
        if self.comment_mode == "always":
            return True
        if self.comment_mode == "never":
            return False
        return not self.passed

    def to_dict(self) -> dict[str, Any]:
        return {
            "auth_status": self.auth_status,
            "merge_status": self.merge_status,
            "failed_commits": [dict(item) for item in self.failed_commits],
            "merge_sha": self.merge_sha,
            "blocking_reason": self.blocking_reason,
            "error": dict(self.error) if self.error else None,
            "verdict_digest": self.verdict_digest,
            "base": self.base,
            "head": self.head,
            "policy_hash": self.policy_hash,
            "audit_error": dict(self.audit_error) if self.audit_error else None,
            "passed": self.passed,
        }


def merge_status_for(plan: MergePlan) -> MergeStatus:
    if plan.state == "committed":
        return "success"
    if plan.state in ("upToDate", "feasible"):
        return "skipped"
    if plan.state == "blocked":
        return "blocked"
    return "failed"


def build_audit_log(config: GateConfig, limiter: RateLimiter | None = None, alert=None) -> AuditLog:
    sinks = [JsonLinesSink(config.audit_log_path)] if config.audit_log_path else [MemorySink()]
    return AuditLog(
        sinks,
        secret_patterns=config.secret_patterns,
        secrets=config.secrets(),
        alert=alert,
        limiter=limiter,
    )


def _alert_to_log(event) -> None:
    log_event("ALERT", f"category={event.category} detail={event.masked_detail}")


def _failed_commits(verdict: AuthenticationVerdict) -> tuple[dict[str, str], ...]:
    return tuple({"sha": r.commit.sha, "outcome": r.outcome} for r in verdict.failed_commits)


def _close_audit_log(audit_log: AuditLog, config: GateConfig) -> dict[str, Any] | None:
    try:
        audit_log.close()
    except OSError as exc:
        log_event("gate", f"audit_write_failed path={config.audit_log_path} error={exc}")
        return AuditWriteError(f"audit log write failed: {exc}", path=config.audit_log_path).to_dict()
    return None


def _evaluate(
    config: GateConfig,
    vcs: VersionControl,
    ref_writer: RefWriter | None,
    audit_log: AuditLog,
    deadline: Deadline,
) -> GateResult:
    base, head = config.base_branch, config.head_branch
    common = {"base": base, "head": head, "comment_mode": config.comment_mode}
    verdict: AuthenticationVerdict | None = None
    policy_hash = None

    try:
        if not base or not head:
            raise ConfigError("base_branch and head_branch are required", base=base, head=head)

        if config.auth_required or config.observe_when_skipped:
            registry = load_signers(config.policy_text())
            policy_hash = registry.policy_hash
            verdict = authenticate(
                vcs,
                base,
                head,
                registry,
                config.required_key_type,
                audit_log=audit_log,
                workers=config.workers,
                deadline=deadline,
                allow_unknown=config.allow_unknown_key_types,
            )
            if not config.auth_required:
                verdict = as_observation(verdict)
        else:
            verdict = skipped_verdict()
            audit_log.emit("warning", "auth.skipped", f"base={base} head={head}")

        common.update(
            failed_commits=_failed_commits(verdict),
            verdict_digest=verdict_digest(verdict),
            policy_hash=policy_hash,
            results=tuple(r.to_dict() for r in verdict.results),
        )
        if verdict.overall == "failed":
            return GateResult(
                auth_status="failed",
                merge_status="skipped",
                error=verdict.error,
                **common,
            )
        if not config.merge_enabled:
            return GateResult(auth_status=verdict.overall, merge_status="skipped", **common)

        # Only the tip that was verified may be written to the base ref.
        engine = MergeEngine(vcs, audit_log=audit_log, ref_writer=ref_writer, method=config.merge_method)
        plan = engine.merge(base, head, head_sha=verdict.head_sha)
        return GateResult(
            auth_status=verdict.overall,
            merge_status=merge_status_for(plan),
            merge_sha=plan.merge_sha,
            blocking_reason=plan.blocking_reason,
            error=plan.error,
            **common,
        )
    except DeadlineExceededError as exc:
        log_event("gate", f"timeout base={base} head={head} error={exc}")
        audit_log.emit("high", "gate.timeout", f"base={base} head={head} operation={exc.context.get('operation')}")
        return GateResult(
            auth_status="failed" if verdict is None else verdict.overall,
            merge_status="failed" if verdict is not None else "skipped",
            error=exc.to_dict(),
            **common,
        )
    except (PolicyParseError, ConfigError) as exc:
        log_event("gate", f"aborted code={exc.code} error={exc}")
        audit_log.emit("high", "gate.aborted", f"code={exc.code} error={exc}")
        return GateResult(auth_status="failed", merge_status="skipped", error=exc.to_dict(), **common)
    except CommitGateError as exc:
        log_event("gate", f"external_failure code={exc.code} error={exc}")
        audit_log.emit("high", "gate.external_failure", f"code={exc.code} error={exc}")
        if verdict is None:
            return GateResult(auth_status="failed", merge_status="skipped", error=exc.to_dict(), **common)
        return GateResult(
            auth_status=verdict.overall,
            merge_status="failed",
            error=exc.to_dict(),
            **common,
        )


def run_gate(
    config: GateConfig,
    *,
    vcs: VersionControl | None = None,
    ref_writer: RefWriter | None = None,
    audit_log: AuditLog | None = None,
    deadline: Deadline | None = None,
    limiter: RateLimiter | None = None,
    retry_policy: RetryPolicy | None = None,
) -> GateResult:
    deadline = deadline or Deadline(config.timeout_seconds)
    limiter = limiter or RateLimiter(config.rate_limits)
    resilience = Resilience(
        policy=retry_policy
        or RetryPolicy(
            attempts=config.retry_attempts,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        ),
        limiter=limiter,
        deadline=deadline,
    )
    if vcs is None:
        vcs = GitRepository(config.repo_path, remote=config.remote, resilience=resilience)
    if ref_writer is None and config.forge_api_base:
        ref_writer = ForgeClient(
            config.forge_api_base,
            config.forge_repository,
            token=config.forge_token,
            resilience=resilience,
        )
    if audit_log is None:
        audit_log = build_audit_log(config, limiter, alert=_alert_to_log)

    audit_log.open()
    try:
        result = _evaluate(config, vcs, ref_writer, audit_log, deadline)
    finally:
        audit_error = _close_audit_log(audit_log, config)
    if audit_error is not None:
        result = dataclasses.replace(result, audit_error=audit_error)
    return result
