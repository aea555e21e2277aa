from commit_gate.audit_log import (
    AuditLog,
    JsonLinesSink,
    MemorySink,
    SecurityEvent,
)
from commit_gate.authenticator import (
    authenticate,
    verdict_digest,
)
from commit_gate.commit_range import (
    extract_range,
)
from commit_gate.config import (
    GateConfig,
    load_config,
)
from commit_gate.engine import (
    GateResult,
    run_gate,
)
from commit_gate.errors import (
    CommitGateError,
    PolicyParseError,
    RangeResolutionError,
    ShallowHistoryError,
)
from commit_gate.git_client import (
    GitRepository,
)
from commit_gate.merge import (
    MergeEngine,
    MergePlan,
)
from commit_gate.report import (
    gate_report,
    write_gate_artifact,
)
from commit_gate.signers import (
    SignerRegistry,
    load_signers,
    load_signers_file,
)
from commit_gate.verifier import (
    verify_commit,
)

__all__ = [
    "AuditLog",
    "CommitGateError",
    "GateConfig",
    "GateResult",
    "GitRepository",
    "JsonLinesSink",
    "MemorySink",
    "MergeEngine",
    "MergePlan",
    "PolicyParseError",
    "RangeResolutionError",
    "SecurityEvent",
    "ShallowHistoryError",
    "SignerRegistry",
    "authenticate",
    "extract_range",
    "gate_report",
    "load_config",
    "load_signers",
    "load_signers_file",
    "run_gate",
    "verdict_digest",
    "verify_commit",
    "write_gate_artifact",
]
