"""Gate configuration.

Built from action-style ``INPUT_*`` environment variables, a YAML file, or a
plain mapping. Everything is validated up front so a bad option fails
before any git or network call is made.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml

from commit_gate.errors import ConfigError
from commit_gate.merge import MERGE_METHODS, MergeMethod
from commit_gate.resilience import DEFAULT_RATE_LIMITS
from commit_gate.signers import KEY_TYPES, KeyType

CommentMode = Literal["always", "on-error", "never"]
COMMENT_MODES: tuple[CommentMode, ...] = ("always", "on-error", "never")

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off", ""}


def parse_bool(value: Any, name: str = "value") -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}", option=name)


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _positive_number(value: Any, name: str, cast=float):
    try:
        number = cast(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}", option=name) from exc
    if number <= 0:
        raise ConfigError(f"{name} must be positive", option=name)
    return number


def _non_negative_number(value: Any, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}", option=name) from exc
    if number < 0:
        raise ConfigError(f"{name} must not be negative", option=name)
    return number


def _parse_rate_limits(value: Any) -> dict[str, tuple[float, float]]:
    if value in (None, ""):
        return dict(DEFAULT_RATE_LIMITS)
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError as exc:
            raise ConfigError("rate_limits must be a JSON object", option="rate_limits") from exc
    if not isinstance(value, Mapping):
        raise ConfigError("rate_limits must be a mapping", option="rate_limits")
    limits = dict(DEFAULT_RATE_LIMITS)
    for category, limit in value.items():
        if isinstance(limit, Mapping):
            capacity, refill = limit.get("capacity"), limit.get("refill_per_second", 0)
        elif isinstance(limit, (list, tuple)) and len(limit) == 2:
            capacity, refill = limit
        else:
            capacity, refill = limit, 0
        try:
            limits[str(category)] = (float(capacity), float(refill))
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"invalid rate limit for {category}", option="rate_limits") from exc
        if limits[str(category)][0] < 0 or limits[str(category)][1] < 0:
            raise ConfigError(f"invalid rate limit for {category}", option="rate_limits")
    return limits


def _split_list(value: Any) -> tuple[str, ...]:
    if value in (None, ""):
        return ()
    if isinstance(value, str):
        return tuple(line.strip() for line in value.splitlines() if line.strip())
    return tuple(str(item) for item in value if str(item).strip())


@dataclass(frozen=True)
class GateConfig:
    allowed_signers: str = ""
    allowed_signers_file: str | None = None
    required_key_type: KeyType | None = None
    auth_required: bool = True
    observe_when_skipped: bool = False
    allow_unknown_key_types: bool = False
    merge_enabled: bool = True
    merge_method: MergeMethod = "fast-forward"
    base_branch: str | None = None
    head_branch: str | None = None
    comment_mode: CommentMode = "on-error"
    workers: int = 4
    timeout_seconds: float | None = 600.0
    retry_attempts: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0
    rate_limits: dict[str, tuple[float, float]] = field(default_factory=lambda: dict(DEFAULT_RATE_LIMITS))
    secret_patterns: tuple[str, ...] = ()
    repo_path: str = "."
    remote: str | None = None
    forge_api_base: str | None = None
    forge_repository: str | None = None
    forge_token: str | None = field(default=None, repr=False)
    audit_log_path: str | None = None
    artifact_dir: str | None = "artifacts/commit-gate"

    def __post_init__(self) -> None:
        if self.required_key_type is not None and self.required_key_type not in KEY_TYPES:
            raise ConfigError(
                f"required_key_type must be one of {', '.join(KEY_TYPES)}",
                option="required_key_type",
            )
        if self.merge_method not in MERGE_METHODS:
            raise ConfigError(
                f"merge_method must be one of {', '.join(MERGE_METHODS)}",
                option="merge_method",
            )
        if self.comment_mode not in COMMENT_MODES:
            raise ConfigError(
                f"comment_mode must be one of {', '.join(COMMENT_MODES)}",
                option="comment_mode",
            )
        if self.workers < 1:
            raise ConfigError("workers must be at least 1", option="workers")
        if self.retry_attempts < 1:
            raise ConfigError("retry_attempts must be at least 1", option="retry_attempts")
        if self.forge_api_base and not self.forge_repository:
            raise ConfigError("forge_repository is required with forge_api_base", option="forge_repository")

    def policy_text(self) -> str:
        if self.allowed_signers.strip():
            return self.allowed_signers
        if self.allowed_signers_file:
            try:
                return Path(self.allowed_signers_file).read_text(encoding="utf-8")
            except OSError as exc:
                raise ConfigError(
                    f"cannot read allowed signers file: {exc}",
                    option="allowed_signers_file",
                ) from exc
        raise ConfigError("allowed_signers is required", option="allowed_signers")

    def secrets(self) -> tuple[str, ...]:
        return tuple(secret for secret in (self.forge_token,) if secret)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "GateConfig":
        normalized = {str(key).strip().lower().replace("-", "_"): value for key, value in data.items()}
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(normalized) - known)
        if unknown:
            raise ConfigError(f"unknown options: {', '.join(unknown)}", options=unknown)

        kwargs: dict[str, Any] = {}
        for name, value in normalized.items():
            if name in ("auth_required", "observe_when_skipped", "allow_unknown_key_types", "merge_enabled"):
                kwargs[name] = parse_bool(value, name)
            elif name in ("workers", "retry_attempts"):
                kwargs[name] = _positive_number(value, name, int)
            elif name in ("retry_base_delay", "retry_max_delay"):
                kwargs[name] = _non_negative_number(value, name)
            elif name == "timeout_seconds":
                kwargs[name] = None if value in (None, "", 0, "0") else _positive_number(value, name)
            elif name == "rate_limits":
                kwargs[name] = _parse_rate_limits(value)
            elif name == "secret_patterns":
                kwargs[name] = _split_list(value)
            elif name == "allowed_signers":
                kwargs[name] = str(value or "")
            elif name in ("merge_method", "comment_mode"):
                kwargs[name] = str(value).strip().lower()
            elif name == "required_key_type":
                kwargs[name] = _optional_str(value)
                if kwargs[name] is not None:
                    kwargs[name] = kwargs[name].lower()
            else:
                kwargs[name] = _optional_str(value)
        return cls(**{k: v for k, v in kwargs.items() if v is not None or k in _NULLABLE})

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "GateConfig":
        environ = os.environ if environ is None else environ
        data: dict[str, Any] = {}
        known = {f.name for f in fields(cls)}
        for key, value in environ.items():
            if not key.startswith("INPUT_"):
                continue
            name = key[len("INPUT_"):].lower().replace("-", "_")
            if name in known and value != "":
                data[name] = value
        if "forge_token" not in data and environ.get("GITHUB_TOKEN"):
            data["forge_token"] = environ["GITHUB_TOKEN"]
        return cls.from_mapping(data)


_NULLABLE = {"timeout_seconds", "required_key_type"}


def load_config(path) -> GateConfig:
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to read config: {exc}", path=str(path)) from exc
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config YAML: {exc}", path=str(path)) from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("Config YAML must be a mapping", path=str(path))
    return GateConfig.from_mapping(data)


def infer_refs_from_event(event: Mapping[str, Any]) -> tuple[str | None, str | None]:
    """Base and head refs from a pull request style event payload."""
    pr = event.get("pull_request") or {}
    base = ((pr.get("base") or {}).get("ref") or "").strip() or None
    head_info = pr.get("head") or {}
    head = (head_info.get("sha") or head_info.get("ref") or "").strip() or None
    return base, head


def load_event(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    environ = os.environ if environ is None else environ
    path = environ.get("GITHUB_EVENT_PATH")
    if not path:
        return {}
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigError(f"cannot read event payload: {exc}", path=path) from exc
    return data if isinstance(data, dict) else {}
