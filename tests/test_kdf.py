"""
Tests for SP800-108 subkey derivation.
"""

from __future__ import annotations

import hashlib
import hmac
import struct

from data_protection import SubkeyDeriver
from data_protection.kdf import ENCRYPTION_LABEL, VALIDATION_LABEL

MASTER = bytes(range(64))


def test_deterministic():
    first = SubkeyDeriver.derive(MASTER, ENCRYPTION_LABEL, b"ctx")
    second = SubkeyDeriver.derive(MASTER, ENCRYPTION_LABEL, b"ctx")
    assert first == second


def test_matches_counter_mode_construction():
    # K(1) = HMAC-SHA512(key, [1]_32 || label || 0x00 || context || [L]_32)
    length = 32
    message = (
        struct.pack(">I", 1)
        + ENCRYPTION_LABEL
        + b"\x00"
        + b"ctx"
        + struct.pack(">I", length * 8)
    )
    expected = hmac.new(MASTER, message, hashlib.sha512).digest()[:length]
    assert SubkeyDeriver.derive(MASTER, ENCRYPTION_LABEL, b"ctx", length) == expected


def test_labels_are_independent():
    enc = SubkeyDeriver.derive(MASTER, ENCRYPTION_LABEL, b"ctx")
    val = SubkeyDeriver.derive(MASTER, VALIDATION_LABEL, b"ctx")
    assert enc != val


def test_context_changes_output():
    assert SubkeyDeriver.derive(MASTER, ENCRYPTION_LABEL, b"a") != SubkeyDeriver.derive(
        MASTER, ENCRYPTION_LABEL, b"b"
    )


def test_master_key_changes_output():
    other = bytes(reversed(MASTER))
    assert SubkeyDeriver.derive(MASTER, ENCRYPTION_LABEL) != SubkeyDeriver.derive(
        other, ENCRYPTION_LABEL
    )


def test_requested_lengths():
    for length in (16, 24, 32, 64, 100):
        assert len(SubkeyDeriver.derive(MASTER, VALIDATION_LABEL, b"", length)) == length


def test_derive_pair():
    enc, val = SubkeyDeriver.derive_pair(MASTER, b"ctx", 16, 64)
    assert enc == SubkeyDeriver.derive(MASTER, ENCRYPTION_LABEL, b"ctx", 16)
    assert val == SubkeyDeriver.derive(MASTER, VALIDATION_LABEL, b"ctx", 64)
