"""Commit range enumeration with shallow-history detection."""

from __future__ import annotations

from commit_gate.errors import ExternalCommandError, RangeResolutionError, ShallowHistoryError
from commit_gate.git_client import VersionControl
from commit_gate.logger import log_event
from commit_gate.models import CommitRecord


def _check_boundary(vcs: VersionControl, commits: list[CommitRecord], base_sha: str) -> None:
    in_range = {commit.sha for commit in commits}
    for commit in commits:
        for parent in commit.parents:
            if parent in in_range:
                continue
            try:
                reachable = vcs.is_ancestor(parent, base_sha)
            except ExternalCommandError as exc:
                raise ShallowHistoryError(
                    f"parent {parent} of {commit.sha} is missing from local history",
                    sha=commit.sha,
                ) from exc
            if not reachable:
                raise ShallowHistoryError(
                    f"parent {parent} of {commit.sha} is outside the fetched history",
                    sha=commit.sha,
                )


def extract_range(
    vcs: VersionControl, base: str, head: str, head_sha: str | None = None
) -> list[CommitRecord]:
    """Commits reachable from ``head`` but not ``base``, oldest first.

    Pass ``head_sha`` to enumerate from an already resolved tip instead of
    reading the ``head`` ref again.
    """
    base_sha = vcs.resolve(base)
    head_sha = head_sha or vcs.resolve(head)
    if base_sha == head_sha:
        log_event("commit_range", f"empty base={base} head={head} sha={head_sha}")
        return []

    shallow = vcs.is_shallow()
    if vcs.merge_base(base_sha, head_sha) is None:
        if shallow:
            raise ShallowHistoryError(
                f"no merge base between {base} and {head} in shallow history",
                base=base,
                head=head,
            )
        raise RangeResolutionError(
            f"{base} and {head} share no common ancestor",
            base=base,
            head=head,
            reason="noCommonAncestor",
        )

    commits = vcs.list_commits(base_sha, head_sha)
    if shallow:
        _check_boundary(vcs, commits, base_sha)

    log_event(
        "commit_range",
        f"resolved base={base}@{base_sha} head={head}@{head_sha} commits={len(commits)} shallow={shallow}",
    )
    return commits
