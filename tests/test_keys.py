from __future__ import annotations

import base64
import hashlib

import pytest

from ufds_alert.keys import KeyParseError, parse_public_key

from helpers import make_public_key


def _blob(line: str) -> bytes:
    return base64.b64decode(line.split()[1])


def test_parse_ed25519_key_with_comment() -> None:
    line = make_public_key("alice@laptop")

    key = parse_public_key(line)

    assert key.key_type == "ssh-ed25519"
    assert key.bits == 256
    assert key.comment == "alice@laptop"
    assert key.openssh == line


def test_parse_key_without_comment() -> None:
    line = make_public_key(comment="")

    key = parse_public_key(line + "\n")

    assert key.comment is None
    assert key.openssh == line


def test_comment_may_contain_spaces() -> None:
    key = parse_public_key(make_public_key("Alice Example (work laptop)"))

    assert key.comment == "Alice Example (work laptop)"


def test_fingerprints_match_openssh_conventions() -> None:
    line = make_public_key()
    blob = _blob(line)

    key = parse_public_key(line)

    assert key.md5_fingerprint == hashlib.md5(blob).hexdigest()
    expected_sha = base64.b64encode(hashlib.sha256(blob).digest()).decode("ascii").rstrip("=")
    assert key.sha256_fingerprint == f"SHA256:{expected_sha}"
    assert str(key) == key.sha256_fingerprint


@pytest.mark.parametrize(
    "line",
    [
        "",
        "ssh-ed25519",
        "ssh-ed25519 !!!not-base64!!!",
        "ssh-unknown AAAAC3NzaC1lZDI1NTE5AAAAIA==",
    ],
)
def test_invalid_keys_raise_key_parse_error(line: str) -> None:
    with pytest.raises(KeyParseError):
        parse_public_key(line)


def test_key_type_must_match_blob() -> None:
    line = make_public_key()
    _, data, *_ = line.split()

    with pytest.raises(KeyParseError):
        parse_public_key(f"ssh-rsa {data}")
