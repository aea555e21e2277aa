"""OpenSSH SSHSIG envelope parsing and verification.

Git stores SSH commit signatures as an armored SSHSIG blob in the commit's
``gpgsig`` header. The blob binds a public key, a namespace (``git``) and a
hash algorithm; the signature covers::

    "SSHSIG" || string(namespace) || string(reserved)
             || string(hash_algorithm) || string(H(message))

FIDO (``sk-``) keys sign ``sha256(application) || flags || counter ||
sha256(<the data above>)`` instead.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

MAGIC = b"SSHSIG"
SIG_VERSION = 1
ARMOR_BEGIN = "-----BEGIN SSH SIGNATURE-----"
ARMOR_END = "-----END SSH SIGNATURE-----"
PGP_ARMOR_BEGIN = "-----BEGIN PGP SIGNATURE-----"

SK_FLAG_USER_PRESENCE = 0x01

_MESSAGE_HASHES = {
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
}

_CURVES = {
    b"nistp256": (ec.SECP256R1, hashes.SHA256),
    b"nistp384": (ec.SECP384R1, hashes.SHA384),
    b"nistp521": (ec.SECP521R1, hashes.SHA512),
}

_RSA_SIG_HASHES = {
    "rsa-sha2-256": hashes.SHA256,
    "rsa-sha2-512": hashes.SHA512,
}


class SSHSigError(ValueError):
    pass


@dataclass(frozen=True)
class SshSignature:
    public_key: bytes
    namespace: str
    reserved: bytes
    hash_algorithm: str
    signature: bytes


@dataclass(frozen=True)
class SshPublicKey:
    key_type: str
    key: Any
    curve: bytes | None = None
    application: bytes | None = None


def _read_uint32(buf: bytes, offset: int) -> tuple[int, int]:
    if len(buf) - offset < 4:
        raise SSHSigError("sshsig.truncated uint32")
    return int.from_bytes(buf[offset : offset + 4], "big"), offset + 4


def _read_string(buf: bytes, offset: int) -> tuple[bytes, int]:
    length, start = _read_uint32(buf, offset)
    end = start + length
    if end > len(buf):
        raise SSHSigError("sshsig.truncated string")
    return buf[start:end], end


def _read_mpint(buf: bytes, offset: int) -> tuple[int, int]:
    raw, offset = _read_string(buf, offset)
    value = int.from_bytes(raw, "big", signed=True)
    if value < 0:
        raise SSHSigError("sshsig.invalid negative mpint")
    return value, offset


def _ssh_string(value: bytes) -> bytes:
    return len(value).to_bytes(4, "big") + value


def _decode_ascii(raw: bytes, what: str) -> str:
    try:
        return raw.decode("ascii")
    except UnicodeDecodeError as exc:
        raise SSHSigError(f"sshsig.invalid {what}") from exc


def unarmor(block: bytes | str) -> bytes:
    text = block.decode("ascii", errors="replace") if isinstance(block, bytes) else block
    text = text.strip()
    if text.startswith(PGP_ARMOR_BEGIN):
        raise SSHSigError("sshsig.unsupported_format pgp")
    if not text.startswith(ARMOR_BEGIN) or not text.endswith(ARMOR_END):
        raise SSHSigError("sshsig.invalid armor")
    body = text[len(ARMOR_BEGIN) : -len(ARMOR_END)]
    payload = "".join(line.strip() for line in body.splitlines())
    if not payload:
        raise SSHSigError("sshsig.invalid empty payload")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise SSHSigError("sshsig.invalid base64") from exc


def parse_signature(block: bytes | str) -> SshSignature:
    decoded = unarmor(block)
    if not decoded.startswith(MAGIC):
        raise SSHSigError("sshsig.invalid magic")
    version, offset = _read_uint32(decoded, len(MAGIC))
    if version != SIG_VERSION:
        raise SSHSigError(f"sshsig.unsupported version={version}")

    public_key, offset = _read_string(decoded, offset)
    namespace, offset = _read_string(decoded, offset)
    reserved, offset = _read_string(decoded, offset)
    hash_algorithm, offset = _read_string(decoded, offset)
    signature, offset = _read_string(decoded, offset)
    if offset != len(decoded):
        raise SSHSigError("sshsig.invalid trailing_bytes")

    return SshSignature(
        public_key=public_key,
        namespace=_decode_ascii(namespace, "namespace"),
        reserved=reserved,
        hash_algorithm=_decode_ascii(hash_algorithm, "hash_algorithm"),
        signature=signature,
    )


def key_type_name(public_key: bytes) -> str:
    raw, _ = _read_string(public_key, 0)
    return _decode_ascii(raw, "key_type")


def fingerprint(public_key: bytes) -> str:
    digest = hashlib.sha256(public_key).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def load_public_key(blob: bytes) -> SshPublicKey:
    key_type = key_type_name(blob)
    _, offset = _read_string(blob, 0)
    curve = None
    application = None
    try:
        if key_type in ("ssh-ed25519", "sk-ssh-ed25519@openssh.com"):
            raw, offset = _read_string(blob, offset)
            key = ed25519.Ed25519PublicKey.from_public_bytes(raw)
        elif key_type == "ssh-rsa":
            e, offset = _read_mpint(blob, offset)
            n, offset = _read_mpint(blob, offset)
            key = rsa.RSAPublicNumbers(e, n).public_key()
        elif key_type.startswith("ecdsa-sha2-") or key_type == "sk-ecdsa-sha2-nistp256@openssh.com":
            curve, offset = _read_string(blob, offset)
            if curve not in _CURVES:
                raise SSHSigError("sshsig.unsupported curve")
            expected_curve = "nistp256" if key_type.startswith("sk-") else key_type[len("ecdsa-sha2-"):]
            if curve != expected_curve.encode("ascii"):
                raise SSHSigError(f"sshsig.invalid curve_mismatch key_type={key_type}")
            point, offset = _read_string(blob, offset)
            key = ec.EllipticCurvePublicKey.from_encoded_point(_CURVES[curve][0](), point)
        else:
            raise SSHSigError(f"sshsig.unsupported key_type={key_type}")
    except SSHSigError:
        raise
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise SSHSigError("sshsig.invalid public_key") from exc

    if key_type.startswith("sk-"):
        application, offset = _read_string(blob, offset)
    if offset != len(blob):
        raise SSHSigError("sshsig.invalid public_key trailing_bytes")
    return SshPublicKey(key_type=key_type, key=key, curve=curve, application=application)


def signed_data(sig: SshSignature, message: bytes) -> bytes:
    hasher = _MESSAGE_HASHES.get(sig.hash_algorithm)
    if hasher is None:
        raise SSHSigError(f"sshsig.unsupported hash_algorithm={sig.hash_algorithm}")
    return b"".join(
        [
            MAGIC,
            _ssh_string(sig.namespace.encode("ascii")),
            _ssh_string(sig.reserved),
            _ssh_string(sig.hash_algorithm.encode("ascii")),
            _ssh_string(hasher(message).digest()),
        ]
    )


def _ecdsa_der(sig_blob: bytes) -> bytes:
    r, offset = _read_mpint(sig_blob, 0)
    s, offset = _read_mpint(sig_blob, offset)
    if offset != len(sig_blob):
        raise SSHSigError("sshsig.invalid ecdsa trailing_bytes")
    return encode_dss_signature(r, s)


def verify_signature(sig: SshSignature, message: bytes, namespace: str = "git") -> bool:
    """Check ``sig`` over ``message``.

    Structural problems raise SSHSigError; a well-formed signature that does
    not verify returns False.
    """
    if sig.namespace != namespace:
        raise SSHSigError(f"sshsig.invalid namespace={sig.namespace}")

    pub = load_public_key(sig.public_key)
    data = signed_data(sig, message)

    raw_format, offset = _read_string(sig.signature, 0)
    sig_format = _decode_ascii(raw_format, "signature_format")
    sig_blob, offset = _read_string(sig.signature, offset)

    if pub.key_type.startswith("sk-"):
        if len(sig.signature) - offset != 5:
            raise SSHSigError("sshsig.invalid sk_trailer")
        flags = sig.signature[offset]
        counter = sig.signature[offset + 1 : offset + 5]
        if not flags & SK_FLAG_USER_PRESENCE:
            return False
        data = (
            hashlib.sha256(pub.application or b"").digest()
            + bytes([flags])
            + counter
            + hashlib.sha256(data).digest()
        )
    elif offset != len(sig.signature):
        raise SSHSigError("sshsig.invalid signature trailing_bytes")

    try:
        if pub.key_type in ("ssh-ed25519", "sk-ssh-ed25519@openssh.com"):
            if sig_format != pub.key_type:
                raise SSHSigError("sshsig.invalid signature_format")
            pub.key.verify(sig_blob, data)
        elif pub.key_type == "ssh-rsa":
            algorithm = _RSA_SIG_HASHES.get(sig_format)
            if algorithm is None:
                raise SSHSigError(f"sshsig.unsupported signature_format={sig_format}")
            pub.key.verify(sig_blob, data, padding.PKCS1v15(), algorithm())
        else:
            if sig_format != pub.key_type:
                raise SSHSigError("sshsig.invalid signature_format")
            algorithm = _CURVES[pub.curve][1]
            pub.key.verify(_ecdsa_der(sig_blob), data, ec.ECDSA(algorithm()))
    except InvalidSignature:
        return False
    return True
