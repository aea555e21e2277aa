"""Per-commit signature verification against the signer registry.

Fails closed: anything that cannot be positively verified maps to a
non-verified outcome. Nothing here raises on commit content.
"""

from __future__ import annotations

from cryptography.exceptions import UnsupportedAlgorithm

from commit_gate.models import CommitRecord, VerificationResult
from commit_gate.signers import KeyType, SignerRegistry
from commit_gate.sshsig import SSHSigError, fingerprint, parse_signature, verify_signature

GIT_NAMESPACE = "git"

_PARSE_ERRORS = (SSHSigError, ValueError, TypeError, UnsupportedAlgorithm)


def _error_detail(exc: Exception) -> str:
    if isinstance(exc, SSHSigError):
        return str(exc)
    return f"sshsig.invalid {type(exc).__name__}"


def verify_commit(
    commit: CommitRecord,
    registry: SignerRegistry,
    required_key_type: KeyType | None = None,
    *,
    allow_unknown: bool = False,
) -> VerificationResult:
    if not commit.signature_blob:
        return VerificationResult(commit=commit, outcome="unsigned", detail="no_signature")

    try:
        sig = parse_signature(commit.signature_blob)
    except _PARSE_ERRORS as exc:
        return VerificationResult(commit=commit, outcome="malformedSignature", detail=_error_detail(exc))

    signer = registry.lookup(sig.public_key, allow_unknown=allow_unknown, namespace=GIT_NAMESPACE)
    if signer is None:
        return VerificationResult(
            commit=commit,
            outcome="unknownSigner",
            detail=f"fingerprint={fingerprint(sig.public_key)}",
        )

    if required_key_type is not None and signer.key_type != required_key_type:
        return VerificationResult(
            commit=commit,
            outcome="keyTypeRejected",
            matched_signer=signer,
            detail=f"key_type={signer.key_type} required={required_key_type}",
        )

    try:
        valid = verify_signature(sig, commit.signed_payload, namespace=GIT_NAMESPACE)
    except _PARSE_ERRORS as exc:
        return VerificationResult(
            commit=commit,
            outcome="malformedSignature",
            matched_signer=signer,
            detail=_error_detail(exc),
        )
    if not valid:
        return VerificationResult(
            commit=commit,
            outcome="malformedSignature",
            matched_signer=signer,
            detail="bad_signature",
        )

    return VerificationResult(commit=commit, outcome="verified", matched_signer=signer, detail="ok")
