from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from commit_gate.signers import AllowedSigner

Outcome = Literal["verified", "unsigned", "unknownSigner", "keyTypeRejected", "malformedSignature"]
OUTCOMES: tuple[Outcome, ...] = (
    "verified",
    "unsigned",
    "unknownSigner",
    "keyTypeRejected",
    "malformedSignature",
)

AuthStatus = Literal["success", "failed", "skipped"]


@dataclass(frozen=True)
class CommitRecord:
    sha: str
    author_identity: str
    signature_blob: bytes | None
    signed_payload: bytes
    parents: tuple[str, ...] = ()


@dataclass(frozen=True)
class VerificationResult:
    commit: CommitRecord
    outcome: Outcome
    matched_signer: AllowedSigner | None = None
    detail: str = ""

    @property
    def verified(self) -> bool:
        return self.outcome == "verified"

    def to_dict(self) -> dict[str, Any]:
        return {
            "sha": self.commit.sha,
            "outcome": self.outcome,
            "principal": self.matched_signer.principal if self.matched_signer else None,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class AuthenticationVerdict:
    overall: AuthStatus
    results: tuple[VerificationResult, ...] = ()
    head_sha: str | None = None
    error: dict[str, Any] | None = field(default=None, compare=False)

    @property
    def failed_commits(self) -> tuple[VerificationResult, ...]:
        return tuple(result for result in self.results if not result.verified)

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall": self.overall,
            "results": [result.to_dict() for result in self.results],
            "head_sha": self.head_sha,
            "failed_commits": [
                {"sha": result.commit.sha, "outcome": result.outcome}
                for result in self.failed_commits
            ],
            "error": dict(self.error) if self.error else None,
        }
