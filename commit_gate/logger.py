import os
import re
from datetime import datetime, timezone


DEFAULT_LOG_PATH = "artifacts/commit-gate/commit-gate.log"

DEFAULT_SECRET_PATTERNS = (
    r"(?i)authorization\s*[:=]\s*(?:(?:bearer|token|basic)\s+)?[^\s,;]+",
    r"(?i)\b(?:token|bearer)\s+[A-Za-z0-9._\-]+",
    r"\bgh[pousr]_[A-Za-z0-9]{20,}\b",
    r"\bgithub_pat_[A-Za-z0-9_]{20,}\b",
    r"-----BEGIN [A-Z ]*PRIVATE KEY-----[\s\S]*?(?:-----END [A-Z ]*PRIVATE KEY-----|$)",
    r"(?<=://)[^/\s:@]+:[^/\s@]+(?=@)",
)

REDACTED = "[REDACTED]"


def _log_path():
    return os.environ.get("COMMIT_GATE_LOG_PATH", DEFAULT_LOG_PATH)


def compile_secret_patterns(patterns=None):
    compiled = []
    for pattern in (*DEFAULT_SECRET_PATTERNS, *(patterns or ())):
        compiled.append(pattern if isinstance(pattern, re.Pattern) else re.compile(pattern))
    return compiled


_DEFAULT_COMPILED = compile_secret_patterns()


def mask_secrets(text, patterns=None, secrets=()):
    value = str(text)
    for secret in secrets:
        if secret:
            value = value.replace(secret, REDACTED)
    for pattern in patterns if patterns is not None else _DEFAULT_COMPILED:
        value = pattern.sub(REDACTED, value)
    return value


def _sanitize(text):
    value = mask_secrets(text)
    value = re.sub(r"\s+", " ", value).strip()
    return value


def log_event(component: str, message: str) -> None:
    path = _log_path()
    line = (
        f"{datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')} "
        f"[{_sanitize(component)}] {_sanitize(message)}"
    )
    try:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
    except OSError:
        return
