"""Private key utilities for EC2 key pairs.

Computes the two fingerprints EC2 shows for a key pair and decrypts the
administrator password EC2 generates for Windows instances.

- ``fingerprint()`` matches ``KeyFingerprint`` from DescribeKeyPairs for
  keys created by EC2 (digest over the PKCS#8 DER encoding).
- ``public_fingerprint()`` matches the MD5 fingerprint printed in the
  instance console output (digest over the OpenSSH public key blob).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import struct
from dataclasses import dataclass, field
from functools import cached_property

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from hangar.core.exceptions import DecryptFailed, InvalidKey


def _colon_hex(digest: bytes) -> str:
    hexed = digest.hex()
    return ":".join(hexed[i : i + 2] for i in range(0, len(hexed), 2))


def _ssh_string(data: bytes) -> bytes:
    return struct.pack(">I", len(data)) + data


def _mpint(value: int) -> bytes:
    """Encode a non-negative integer as an SSH mpint."""
    if value == 0:
        return _ssh_string(b"")
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    if raw[0] & 0x80:
        raw = b"\x00" + raw
    return _ssh_string(raw)


def ssh_rsa_blob(key: rsa.RSAPublicKey) -> bytes:
    """OpenSSH wire format of an RSA public key."""
    numbers = key.public_numbers()
    return _ssh_string(b"ssh-rsa") + _mpint(numbers.e) + _mpint(numbers.n)


@dataclass(frozen=True)
class PrivateKey:
    """Immutable RSA private key carrying its PEM text.

    Parsing is deferred until a fingerprint or decryption is requested, so an
    empty or malformed key can be held in configuration and only fails when
    it is actually used.

    Example:
        >>> key = PrivateKey.from_pem(pem_text)
        >>> key.fingerprint()
        '3c:ee:c2:...'
    """

    pem: str = field(repr=False)

    @classmethod
    def from_pem(cls, pem: str) -> PrivateKey:
        return cls(pem=pem)

    @cached_property
    def _key(self) -> rsa.RSAPrivateKey:
        text = self.pem.strip()
        if not text:
            raise InvalidKey("Private key is empty")
        try:
            loaded = serialization.load_pem_private_key(text.encode(), password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise InvalidKey(f"Could not parse private key: {e}") from e
        if not isinstance(loaded, rsa.RSAPrivateKey):
            raise InvalidKey(f"Expected an RSA private key, got {type(loaded).__name__}")
        return loaded

    @cached_property
    def _fingerprint(self) -> str:
        der = self._key.private_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return _colon_hex(hashlib.sha1(der).digest())

    @cached_property
    def _public_fingerprint(self) -> str:
        blob = ssh_rsa_blob(self._key.public_key())
        return _colon_hex(hashlib.md5(blob).digest())

    def fingerprint(self) -> str:
        """Fingerprint of the PKCS#8 encoding, as EC2 reports it for the key pair."""
        return self._fingerprint

    def public_fingerprint(self) -> str:
        """MD5 fingerprint of the OpenSSH public key blob."""
        return self._public_fingerprint

    def public_key_openssh(self) -> str:
        """Public half in ``ssh-rsa AAAA...`` form."""
        return "ssh-rsa " + base64.b64encode(ssh_rsa_blob(self._key.public_key())).decode()

    def to_pem(self) -> str:
        """Re-encode the key as unencrypted PKCS#8 PEM."""
        return self._key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()

    def decrypt_windows_password(self, cipher_text: str) -> str:
        """Decrypt the base64 password blob returned by GetPasswordData.

        Whitespace anywhere in the input (line breaks, spaces) is ignored.

        Raises:
            InvalidKey: If the PEM cannot be parsed.
            DecryptFailed: If the blob is malformed or the key does not match.
        """
        compact = "".join(cipher_text.split())
        if not compact:
            raise DecryptFailed("Password data is empty")
        try:
            encrypted = base64.b64decode(compact, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptFailed(f"Password data is not valid base64: {e}") from e
        try:
            plain = self._key.decrypt(encrypted, padding.PKCS1v15())
        except ValueError as e:
            raise DecryptFailed("Password data does not match this key") from e
        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptFailed("Decrypted password is not valid UTF-8") from e
