"""
Field encryption tests.

Tests cover:
- Envelope format and randomized IVs
- MAC verification on decrypt (tamper detection)
- Legacy two-part envelopes and upgrade
- Key configuration errors
"""

import pytest

from aba_core.core.config import EncryptionConfig
from aba_core.core.encryption import FieldCipher
from aba_core.core.exceptions import IntegrityViolation


KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
OTHER_KEY = "aa" * 32


def _legacy(cipher: FieldCipher, plaintext: str) -> str:
    """Two-part envelope as written before integrity tags existed."""
    iv, ciphertext, _mac = cipher.encrypt(plaintext).split(":")
    return f"{iv}:{ciphertext}"


def _flip_hex(value: str, index: int) -> str:
    """Replace one hex character with a different one."""
    chars = list(value)
    chars[index] = "0" if chars[index] != "0" else "1"
    return "".join(chars)


# =============================================================================
# Round trip
# =============================================================================

def test_encrypt_produces_three_part_envelope(cipher):
    envelope = cipher.encrypt("Ada")
    iv, ciphertext, mac = envelope.split(":")

    assert len(iv) == 32
    assert len(ciphertext) % 32 == 0
    assert len(mac) == 64
    assert cipher.decrypt(envelope) == "Ada"


def test_encrypt_uses_fresh_iv(cipher):
    assert cipher.encrypt("same value") != cipher.encrypt("same value")


def test_unicode_round_trip(cipher):
    assert cipher.decrypt(cipher.encrypt("José Müller")) == "José Müller"


def test_empty_values_map_to_empty(cipher):
    assert cipher.encrypt("") == ""
    assert cipher.decrypt("") == ""


# =============================================================================
# Integrity
# =============================================================================

# 11 bytes pad to one AES block: 32 hex characters of ciphertext
SSN_CIPHERTEXT_HEX = 32
MAC_HEX = 64


@pytest.mark.parametrize("index", range(SSN_CIPHERTEXT_HEX))
def test_any_ciphertext_character_flip_is_rejected(cipher, index):
    iv, ciphertext, mac = cipher.encrypt("123-45-6789").split(":")
    assert len(ciphertext) == SSN_CIPHERTEXT_HEX

    with pytest.raises(IntegrityViolation):
        cipher.decrypt(f"{iv}:{_flip_hex(ciphertext, index)}:{mac}")


@pytest.mark.parametrize("index", range(MAC_HEX))
def test_any_mac_character_flip_is_rejected(cipher, index):
    iv, ciphertext, mac = cipher.encrypt("123-45-6789").split(":")
    tampered = f"{iv}:{ciphertext}:{_flip_hex(mac, index)}"

    with pytest.raises(IntegrityViolation):
        cipher.decrypt(tampered)
    assert cipher.verify_integrity(tampered) is False


def test_tampered_mac_is_rejected(cipher):
    envelope = _flip_hex(cipher.encrypt("Ada"), -1)

    with pytest.raises(IntegrityViolation):
        cipher.decrypt(envelope)
    assert cipher.verify_integrity(envelope) is False


def test_wrong_hmac_key_is_rejected(cipher):
    other = FieldCipher(EncryptionConfig.from_hex(KEY, OTHER_KEY))
    with pytest.raises(IntegrityViolation):
        other.decrypt(cipher.encrypt("Ada"))


@pytest.mark.parametrize("envelope", ["nothex", "a:b:c:d", "zz:zz", "00:00:00"])
def test_malformed_envelopes_raise(cipher, envelope):
    with pytest.raises(IntegrityViolation):
        cipher.decrypt(envelope)


def test_verify_integrity(cipher):
    assert cipher.verify_integrity(cipher.encrypt("Ada")) is True
    assert cipher.verify_integrity(None) is True
    assert cipher.verify_integrity(_legacy(cipher, "Ada")) is True
    assert cipher.verify_integrity("a:b:c:d") is False


# =============================================================================
# Legacy envelopes
# =============================================================================

def test_legacy_envelope_still_decrypts(cipher):
    assert cipher.decrypt(_legacy(cipher, "Lovelace")) == "Lovelace"


def test_upgrade_adds_mac(cipher):
    legacy = _legacy(cipher, "Lovelace")
    assert cipher.needs_integrity_upgrade(legacy)

    upgraded = cipher.upgrade(legacy)
    assert len(upgraded.split(":")) == 3
    assert not cipher.needs_integrity_upgrade(upgraded)
    assert cipher.decrypt(upgraded) == "Lovelace"


def test_upgrade_leaves_current_envelopes_alone(cipher):
    envelope = cipher.encrypt("Ada")
    assert cipher.upgrade(envelope) == envelope
    assert not cipher.needs_integrity_upgrade(None)


# =============================================================================
# Key configuration
# =============================================================================

def test_missing_key_raises():
    with pytest.raises(RuntimeError, match="ENCRYPTION_KEY not configured"):
        EncryptionConfig.from_hex("")


@pytest.mark.parametrize("bad", ["not-hex", "abcd", "00" * 31])
def test_invalid_key_raises(bad):
    with pytest.raises(RuntimeError):
        EncryptionConfig.from_hex(bad)


def test_invalid_hmac_key_raises():
    with pytest.raises(RuntimeError, match="HMAC_KEY"):
        EncryptionConfig.from_hex(KEY, "abcd")


def test_hmac_key_falls_back_to_encryption_key():
    config = EncryptionConfig.from_hex(KEY)
    assert config.hmac_key == config.encryption_key
    assert len(config.encryption_key) == 32
