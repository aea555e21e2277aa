"""Allowed-signers policy parsing and lookup."""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from hashlib import sha256
from pathlib import Path
from typing import Iterator, Literal, Sequence

from commit_gate.errors import PolicyParseError
from commit_gate.logger import log_event
from commit_gate.sshsig import SSHSigError, fingerprint, key_type_name, load_public_key

KeyType = Literal["rsa", "ecdsa", "ed25519", "ed25519-sk", "ecdsa-sk", "unknown"]
KEY_TYPES: tuple[KeyType, ...] = ("rsa", "ecdsa", "ed25519", "ed25519-sk", "ecdsa-sk", "unknown")

OPENSSH_KEY_TYPES: dict[str, KeyType] = {
    "ssh-rsa": "rsa",
    "ecdsa-sha2-nistp256": "ecdsa",
    "ecdsa-sha2-nistp384": "ecdsa",
    "ecdsa-sha2-nistp521": "ecdsa",
    "ssh-ed25519": "ed25519",
    "sk-ssh-ed25519@openssh.com": "ed25519-sk",
    "sk-ecdsa-sha2-nistp256@openssh.com": "ecdsa-sk",
}

_OPTION_RE = re.compile(r"^(?:cert-authority|namespaces=|valid-after=|valid-before=)", re.IGNORECASE)
_TOKEN_RE = re.compile(r'(?:[^\s"]|"[^"]*")+')
_NAMESPACES_RE = re.compile(r'(?:^|,)namespaces="([^"]*)"', re.IGNORECASE)


@dataclass(frozen=True)
class AllowedSigner:
    principal: str
    public_key: bytes
    key_type: KeyType
    fingerprint: str
    line_number: int = 0
    namespaces: tuple[str, ...] = ()

    def allows_namespace(self, namespace: str) -> bool:
        return not self.namespaces or namespace in self.namespaces


class SignerRegistry:
    def __init__(self, signers: Sequence[AllowedSigner] = (), policy_hash: str = "") -> None:
        self._signers = tuple(signers)
        self.policy_hash = policy_hash
        index: dict[str, list[AllowedSigner]] = {}
        for signer in self._signers:
            entries = index.setdefault(signer.fingerprint, [])
            if entries and entries[0].key_type != signer.key_type:
                raise PolicyParseError(
                    f"key {signer.fingerprint} is listed as both "
                    f"{entries[0].key_type} and {signer.key_type}",
                    line_number=signer.line_number,
                )
            entries.append(signer)
        self._by_fingerprint = {fp: tuple(entries) for fp, entries in index.items()}

    def __len__(self) -> int:
        return len(self._signers)

    def __iter__(self) -> Iterator[AllowedSigner]:
        return iter(self._signers)

    @property
    def signers(self) -> tuple[AllowedSigner, ...]:
        return self._signers

    def lookup(
        self,
        public_key: bytes | str,
        *,
        allow_unknown: bool = False,
        namespace: str = "git",
    ) -> AllowedSigner | None:
        fp = public_key if isinstance(public_key, str) else fingerprint(public_key)
        for signer in self._by_fingerprint.get(fp, ()):
            if signer.key_type == "unknown" and not allow_unknown:
                continue
            if not signer.allows_namespace(namespace):
                continue
            return signer
        return None

    def principals_for(self, public_key: bytes | str) -> list[str]:
        fp = public_key if isinstance(public_key, str) else fingerprint(public_key)
        return [signer.principal for signer in self._by_fingerprint.get(fp, ())]

    def filter_by_key_type(self, required: KeyType | None) -> "SignerRegistry":
        if required is None:
            return self
        return SignerRegistry(
            [signer for signer in self._signers if signer.key_type == required],
            policy_hash=self.policy_hash,
        )


def normalize_key_type(token: str) -> KeyType:
    value = (token or "").strip()
    if value in OPENSSH_KEY_TYPES:
        return OPENSSH_KEY_TYPES[value]
    lowered = value.lower()
    if lowered in KEY_TYPES:
        return lowered  # type: ignore[return-value]
    return "unknown"


def _split_tokens(line, line_number):
    if line.count('"') % 2:
        raise PolicyParseError("unbalanced quotes", line_number=line_number)
    return _TOKEN_RE.findall(line)


def _parse_namespaces(options):
    if not options:
        return ()
    match = _NAMESPACES_RE.search(options)
    if not match:
        return ()
    return tuple(ns.strip() for ns in match.group(1).split(",") if ns.strip())


def _parse_line(line, line_number):
    tokens = _split_tokens(line, line_number)
    principal = tokens[0]
    rest = tokens[1:]
    options = None
    if rest and _OPTION_RE.match(rest[0]) and rest[0] not in OPENSSH_KEY_TYPES:
        options = rest[0]
        rest = rest[1:]
    if len(rest) < 2:
        raise PolicyParseError(
            "expected '<principal> <keyType> <base64-key>'",
            line_number=line_number,
        )

    type_token, key_token = rest[0], rest[1]
    key_type = normalize_key_type(type_token)
    try:
        blob = base64.b64decode(key_token, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise PolicyParseError("key material is not valid base64", line_number=line_number) from exc
    if not blob:
        raise PolicyParseError("key material is empty", line_number=line_number)

    if key_type != "unknown":
        try:
            embedded = key_type_name(blob)
            load_public_key(blob)
        except SSHSigError as exc:
            raise PolicyParseError(
                f"{type_token} key material is malformed",
                line_number=line_number,
            ) from exc
        embedded_type = OPENSSH_KEY_TYPES.get(embedded, "unknown")
        if embedded_type != key_type:
            raise PolicyParseError(
                f"declared key type {type_token} does not match key material ({embedded})",
                line_number=line_number,
            )

    return AllowedSigner(
        principal=principal,
        public_key=blob,
        key_type=key_type,
        fingerprint=fingerprint(blob),
        line_number=line_number,
        namespaces=_parse_namespaces(options),
    )


def load_signers(policy_text: str) -> SignerRegistry:
    if not isinstance(policy_text, str):
        raise PolicyParseError("allowed signers policy must be text")
    signers = []
    for line_number, raw_line in enumerate(policy_text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        signers.append(_parse_line(line, line_number))
    return SignerRegistry(signers, policy_hash=sha256(policy_text.encode("utf-8")).hexdigest())


def load_signers_file(path) -> SignerRegistry:
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        log_event("signers", f"load_failed path={path} error={exc}")
        raise PolicyParseError(f"Failed to read allowed signers: {exc}", path=str(path)) from exc

    try:
        registry = load_signers(raw)
    except PolicyParseError as exc:
        log_event("signers", f"parse_failed path={path} error={exc}")
        raise

    log_event(
        "signers",
        f"loaded path={path} signers={len(registry)} policy_hash={registry.policy_hash}",
    )
    return registry
