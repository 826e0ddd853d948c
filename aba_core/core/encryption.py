"""Field-level encryption for PHI at rest.

Envelope format (colon-delimited hex):

    iv:ciphertext:mac   current; mac = HMAC-SHA256 over "iv:ciphertext"
    iv:ciphertext       legacy, no integrity tag; still decrypts

AES-256-CBC with PKCS7 padding and a random 16-byte IV per call. A present
MAC is always verified (constant time) before decrypting; any mismatch or
malformed envelope raises IntegrityViolation. Nothing here returns partial
plaintext.
"""

import hashlib
import hmac
import logging
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from aba_core.core.config import EncryptionConfig
from aba_core.core.exceptions import IntegrityViolation


logger = logging.getLogger(__name__)

IV_LENGTH = 16
_BLOCK_BITS = 128


class FieldCipher:
    """
    Envelope codec bound to one set of keys.

    Construct once at startup from EncryptionConfig and pass it to whatever
    reads or writes patient rows.
    """

    def __init__(self, config: EncryptionConfig):
        self._key = config.encryption_key
        self._hmac_key = config.hmac_key

    def _mac(self, data: str) -> str:
        return hmac.new(self._hmac_key, data.encode(), hashlib.sha256).hexdigest()

    def _verify_mac(self, data: str, mac: str) -> bool:
        return hmac.compare_digest(self._mac(data).encode(), mac.encode("utf-8"))

    def _decrypt_parts(self, iv_hex: str, ciphertext_hex: str) -> str:
        try:
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
        except ValueError:
            raise IntegrityViolation("Encrypted data is not valid hex")
        if len(iv) != IV_LENGTH or not ciphertext or len(ciphertext) % (_BLOCK_BITS // 8):
            raise IntegrityViolation("Invalid encrypted data format")

        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        unpadder = padding.PKCS7(_BLOCK_BITS).unpadder()
        try:
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            raise IntegrityViolation("Failed to decrypt data")

    def encrypt(self, plaintext: str) -> str:
        """Encrypt to a three-part envelope. Empty input maps to ""."""
        if not plaintext:
            return ""
        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(_BLOCK_BITS).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        data = f"{iv.hex()}:{ciphertext.hex()}"
        return f"{data}:{self._mac(data)}"

    def decrypt(self, envelope: str) -> str:
        """
        Decrypt a two- or three-part envelope.

        Raises:
            IntegrityViolation: MAC mismatch, malformed envelope, or bad padding
        """
        if not envelope:
            return ""
        parts = envelope.split(":")
        if len(parts) == 2:
            return self._decrypt_parts(parts[0], parts[1])
        if len(parts) != 3:
            raise IntegrityViolation("Invalid encrypted data format")

        iv_hex, ciphertext_hex, mac = parts
        if not self._verify_mac(f"{iv_hex}:{ciphertext_hex}", mac):
            logger.error("HMAC verification failed for encrypted field")
            raise IntegrityViolation("Data integrity check failed - possible tampering detected")
        return self._decrypt_parts(iv_hex, ciphertext_hex)

    def needs_integrity_upgrade(self, envelope: str | None) -> bool:
        """True for legacy envelopes without a MAC."""
        if not envelope:
            return False
        return len(envelope.split(":")) == 2

    def upgrade(self, envelope: str) -> str:
        """Re-encrypt a legacy envelope into the three-part form; others unchanged."""
        if not self.needs_integrity_upgrade(envelope):
            return envelope
        return self.encrypt(self.decrypt(envelope))

    def verify_integrity(self, envelope: str | None) -> bool:
        """
        Check the MAC without decrypting.

        Legacy envelopes cannot be verified and report True; malformed ones
        report False.
        """
        if not envelope:
            return True
        parts = envelope.split(":")
        if len(parts) == 2:
            return True
        if len(parts) != 3:
            return False
        iv_hex, ciphertext_hex, mac = parts
        return self._verify_mac(f"{iv_hex}:{ciphertext_hex}", mac)
