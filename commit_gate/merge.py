"""Fast-forward feasibility and execution.

The base ref only ever moves to a descendant of its current tip. The tip is
re-read immediately before the write and the write itself is a
compare-and-swap against the planned tip; losing that race blocks the merge
with ``baseMoved`` and is never retried here.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from commit_gate.audit_log import AuditLog
from commit_gate.errors import (
    CommitGateError,
    DeadlineExceededError,
    RangeResolutionError,
    RefUpdateRejectedError,
)
from commit_gate.git_client import VersionControl
from commit_gate.logger import log_event

MergeState = Literal["checking", "feasible", "blocked", "executing", "committed", "failed", "upToDate"]
BlockingReason = Literal["notFastForward", "baseMoved", "headMoved", "noCommonAncestor", "protectedBranchPolicy"]
MergeMethod = Literal["fast-forward", "merge"]
MERGE_METHODS: tuple[MergeMethod, ...] = ("fast-forward", "merge")

_TRANSITIONS: dict[str, frozenset[str]] = {
    "checking": frozenset({"feasible", "blocked", "upToDate", "failed"}),
    "feasible": frozenset({"executing"}),
    "executing": frozenset({"committed", "blocked", "failed"}),
}


class RefWriter(Protocol):
    def current_tip(self, ref: str) -> str | None: ...

    def update_ref(self, ref: str, expected_old_sha: str, new_sha: str) -> bool: ...


@dataclass(frozen=True)
class MergePlan:
    base: str
    head: str
    base_sha: str | None = None
    head_sha: str | None = None
    state: MergeState = "checking"
    feasible: bool = False
    blocking_reason: BlockingReason | None = None
    merge_sha: str | None = None
    error: dict[str, Any] | None = field(default=None, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


def _advance(plan: MergePlan, state: MergeState, **changes: Any) -> MergePlan:
    allowed = _TRANSITIONS.get(plan.state, frozenset())
    if state not in allowed:
        raise ValueError(f"commit_gate.merge.invalid transition {plan.state}->{state}")
    return dataclasses.replace(plan, state=state, **changes)


class MergeEngine:
    def __init__(
        self,
        vcs: VersionControl,
        *,
        audit_log: AuditLog | None = None,
        ref_writer: RefWriter | None = None,
        method: MergeMethod = "fast-forward",
    ) -> None:
        if method not in MERGE_METHODS:
            raise ValueError(f"commit_gate.merge.invalid method={method}")
        self.vcs = vcs
        self.audit_log = audit_log
        self.ref_writer = ref_writer or vcs
        self.method = method

    def _record(self, severity, category, detail):
        if self.audit_log is not None:
            self.audit_log.emit(severity, category, detail)

    def plan(self, base: str, head: str, head_sha: str | None = None) -> MergePlan:
        """Classify the merge of ``head`` into ``base``.

        ``head_sha`` pins the tip that was authenticated. If ``head`` no
        longer points there the plan is blocked with ``headMoved``.
        """
        plan = MergePlan(base=base, head=head)
        try:
            base_sha = self.vcs.resolve(base)
            current_head = self.vcs.resolve(head)
        except RangeResolutionError as exc:
            self._record("warning", "merge.unresolvable", f"base={base} head={head} error={exc}")
            return _advance(plan, "failed", error=exc.to_dict())
        head_sha = head_sha or current_head
        plan = dataclasses.replace(plan, base_sha=base_sha, head_sha=head_sha)

        if current_head != head_sha:
            self._record(
                "high",
                "merge.head_moved",
                f"head={head} verified={head_sha} current={current_head}",
            )
            result = _advance(plan, "blocked", blocking_reason="headMoved")
        elif base_sha == head_sha:
            result = _advance(plan, "upToDate")
        elif self.vcs.is_ancestor(base_sha, head_sha):
            result = _advance(plan, "feasible", feasible=True)
        elif self.vcs.is_ancestor(head_sha, base_sha):
            result = _advance(plan, "upToDate")
        elif self.vcs.merge_base(base_sha, head_sha) is None:
            result = _advance(plan, "blocked", blocking_reason="noCommonAncestor")
        else:
            result = _advance(plan, "blocked", blocking_reason="notFastForward")

        log_event(
            "merge",
            f"plan base={base}@{base_sha} head={head}@{head_sha} state={result.state} "
            f"reason={result.blocking_reason}",
        )
        if result.state == "blocked":
            self._record("warning", "merge.blocked", f"base={base} head={head} reason={result.blocking_reason}")
        return result

    def execute(self, plan: MergePlan) -> MergePlan:
        if plan.state != "feasible":
            return plan
        plan = _advance(plan, "executing")
        try:
            current = self.ref_writer.current_tip(plan.base)
            if current != plan.base_sha:
                return self._base_moved(plan, current)

            new_sha = plan.head_sha
            if self.method == "merge":
                new_sha = self.vcs.create_merge_commit(
                    plan.base_sha,
                    plan.head_sha,
                    f"Merge {plan.head} into {plan.base}",
                )

            if not self.ref_writer.update_ref(plan.base, plan.base_sha, new_sha):
                return self._base_moved(plan, None)
        except RefUpdateRejectedError as exc:
            self._record("high", "merge.write_rejected", f"base={plan.base} error={exc}")
            return _advance(
                plan,
                "failed",
                blocking_reason="protectedBranchPolicy" if exc.protected else None,
                error=exc.to_dict(),
            )
        except DeadlineExceededError:
            raise
        except CommitGateError as exc:
            self._record("high", "merge.failed", f"base={plan.base} code={exc.code} error={exc}")
            return _advance(plan, "failed", error=exc.to_dict())

        self._record(
            "warning",
            "merge.committed",
            f"base={plan.base} old={plan.base_sha} new={new_sha} method={self.method}",
        )
        log_event("merge", f"committed base={plan.base} old={plan.base_sha} new={new_sha}")
        return _advance(plan, "committed", merge_sha=new_sha)

    def _base_moved(self, plan: MergePlan, current: str | None) -> MergePlan:
        self._record(
            "high",
            "merge.base_moved",
            f"base={plan.base} expected={plan.base_sha} current={current or 'unknown'}",
        )
        log_event("merge", f"base_moved base={plan.base} expected={plan.base_sha}")
        return _advance(plan, "blocked", feasible=False, blocking_reason="baseMoved")

    def merge(self, base: str, head: str, head_sha: str | None = None) -> MergePlan:
        return self.execute(self.plan(base, head, head_sha))
