"""Authenticate every commit in a range against the allowed signers."""

from __future__ import annotations

import concurrent.futures
import dataclasses
import json
from concurrent.futures import ThreadPoolExecutor
from hashlib import sha256
from typing import Sequence

from commit_gate.audit_log import AuditLog, Severity
from commit_gate.commit_range import extract_range
from commit_gate.errors import DeadlineExceededError, RangeResolutionError
from commit_gate.git_client import VersionControl
from commit_gate.logger import log_event
from commit_gate.models import AuthenticationVerdict, CommitRecord, Outcome, VerificationResult
from commit_gate.resilience import Deadline
from commit_gate.signers import KeyType, SignerRegistry
from commit_gate.verifier import verify_commit

DEFAULT_WORKERS = 4
VERDICT_DOMAIN = "commit_gate.authentication_verdict.v1"

OUTCOME_SEVERITY: dict[Outcome, Severity] = {
    "verified": "info",
    "unsigned": "warning",
    "keyTypeRejected": "warning",
    "unknownSigner": "high",
    "malformedSignature": "high",
}


def skipped_verdict() -> AuthenticationVerdict:
    return AuthenticationVerdict(overall="skipped")


def as_observation(verdict: AuthenticationVerdict) -> AuthenticationVerdict:
    """Keep the per-commit results but report the phase as skipped."""
    return dataclasses.replace(verdict, overall="skipped")


def verdict_digest(verdict: AuthenticationVerdict) -> str:
    """sha256 over the domain tag and the verdict as sorted, compact JSON."""
    body = json.dumps(
        {
            "overall": verdict.overall,
            "results": [result.to_dict() for result in verdict.results],
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return sha256(f"{VERDICT_DOMAIN}\n{body}".encode("utf-8")).hexdigest()


def _verify_all(
    commits: Sequence[CommitRecord],
    registry: SignerRegistry,
    required_key_type: KeyType | None,
    allow_unknown: bool,
    workers: int,
    deadline: Deadline | None,
) -> list[VerificationResult]:
    if not commits:
        return []
    collected: list[tuple[int, VerificationResult]] = []
    pool = ThreadPoolExecutor(
        max_workers=max(1, min(workers, len(commits))),
        thread_name_prefix="commit-gate-verify",
    )
    try:
        futures = {
            pool.submit(
                verify_commit,
                commit,
                registry,
                required_key_type,
                allow_unknown=allow_unknown,
            ): index
            for index, commit in enumerate(commits)
        }
        timeout = deadline.remaining() if deadline is not None else None
        try:
            for future in concurrent.futures.as_completed(futures, timeout=timeout):
                collected.append((futures[future], future.result()))
        except concurrent.futures.TimeoutError as exc:
            raise DeadlineExceededError(
                f"deadline of {deadline.seconds}s exceeded during verification",
                operation="verify_commit",
            ) from exc
    finally:
        pool.shutdown(wait=False, cancel_futures=True)

    collected.sort(key=lambda item: item[0])
    return [result for _, result in collected]


def _record(audit_log, severity, category, detail):
    if audit_log is not None:
        audit_log.emit(severity, category, detail)


def authenticate(
    vcs: VersionControl,
    base: str,
    head: str,
    registry: SignerRegistry,
    required_key_type: KeyType | None = None,
    *,
    audit_log: AuditLog | None = None,
    workers: int = DEFAULT_WORKERS,
    deadline: Deadline | None = None,
    allow_unknown: bool = False,
) -> AuthenticationVerdict:
    if deadline is not None:
        deadline.check("authenticate")

    try:
        head_sha = vcs.resolve(head)
        commits = extract_range(vcs, base, head, head_sha)
    except RangeResolutionError as exc:
        log_event("authenticate", f"range_failed base={base} head={head} error={exc}")
        _record(audit_log, "high", "auth.range_unresolved", f"base={base} head={head} code={exc.code} error={exc}")
        return AuthenticationVerdict(overall="failed", error=exc.to_dict())

    if required_key_type is not None and not len(registry.filter_by_key_type(required_key_type)):
        _record(
            audit_log,
            "warning",
            "auth.no_signer_for_key_type",
            f"required_key_type={required_key_type} signers={len(registry)}",
        )

    results = _verify_all(commits, registry, required_key_type, allow_unknown, workers, deadline)
    if len(results) != len(commits):
        raise RuntimeError("commit_gate.authenticate.invalid result_count")

    verdict = AuthenticationVerdict(
        overall="failed" if any(not r.verified for r in results) else "success",
        results=tuple(results),
        head_sha=head_sha,
    )

    for result in verdict.failed_commits:
        _record(
            audit_log,
            OUTCOME_SEVERITY[result.outcome],
            f"auth.{result.outcome}",
            f"sha={result.commit.sha} author={result.commit.author_identity} detail={result.detail}",
        )
    _record(
        audit_log,
        "info" if verdict.overall == "success" else "high",
        "auth.verdict",
        f"base={base} head={head} overall={verdict.overall} "
        f"commits={len(results)} failed={len(verdict.failed_commits)}",
    )
    log_event(
        "authenticate",
        f"FINAL overall={verdict.overall} commits={len(results)} failed={len(verdict.failed_commits)}",
    )
    return verdict
