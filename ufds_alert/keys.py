"""SSH public key parsing and fingerprint helpers."""
from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Optional

import paramiko
from paramiko.pkey import UnknownKeyType


class KeyParseError(RuntimeError):
    """Raised when a public key line cannot be parsed."""


@dataclass(frozen=True)
class PublicKey:
    """A parsed OpenSSH public key together with its trailing comment."""

    pkey: paramiko.PKey
    comment: Optional[str] = None

    @property
    def key_type(self) -> str:
        return self.pkey.get_name()

    @property
    def bits(self) -> int:
        return self.pkey.get_bits()

    @property
    def md5_fingerprint(self) -> str:
        """MD5 fingerprint as lowercase hex, the form kept in the key store."""

        return self.pkey.get_fingerprint().hex()

    @property
    def sha256_fingerprint(self) -> str:
        return self.pkey.fingerprint

    @property
    def openssh(self) -> str:
        line = f"{self.key_type} {self.pkey.get_base64()}"
        if self.comment:
            line = f"{line} {self.comment}"
        return line

    def __str__(self) -> str:
        return self.sha256_fingerprint


def parse_public_key(text: str) -> PublicKey:
    """Parse an ``authorized_keys`` style line such as ``ssh-ed25519 AAAA... me@host``."""

    parts = text.strip().split(None, 2)
    if len(parts) < 2:
        raise KeyParseError("Public key must contain a key type and base64 data")

    key_type, encoded = parts[0], parts[1]
    comment = parts[2].strip() if len(parts) == 3 else None

    try:
        blob = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise KeyParseError("Public key data is not valid base64") from exc

    try:
        pkey = paramiko.PKey.from_type_string(key_type, blob)
    except UnknownKeyType as exc:
        raise KeyParseError(f"Unsupported public key type {key_type!r}") from exc
    except (paramiko.SSHException, ValueError, TypeError) as exc:
        raise KeyParseError(f"Unable to load {key_type} public key: {exc}") from exc

    return PublicKey(pkey=pkey, comment=comment or None)


__all__ = ["KeyParseError", "PublicKey", "parse_public_key"]
