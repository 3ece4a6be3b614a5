"""Minisign-compatible Ed25519 keys and signatures (no Pants dependencies).

Key and signature files use the minisign text format so releases can be
verified with the ``minisign`` CLI::

    untrusted comment: <comment>
    <base64 key or signature>
    trusted comment: <comment>          (signatures only)
    <base64 global signature>           (signatures only)

Signatures are produced over the BLAKE2b-512 hash of the message (``ED``).
Legacy signatures over the raw message (``Ed``) are still verified.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
import struct
import time
from dataclasses import dataclass
from typing import Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from pants_buf_plugins._exceptions import PluginIOError, PluginReleaseError

SIG_ALG = b"Ed"
SIG_ALG_HASHED = b"ED"
KDF_SCRYPT = b"Sc"
KDF_NONE = b"\x00\x00"
CHK_BLAKE2B = b"B2"

UNTRUSTED_PREFIX = "untrusted comment: "
TRUSTED_PREFIX = "trusted comment: "

# libsodium's crypto_pwhash_scryptsalsa208sha256 "sensitive" limits.
DEFAULT_OPSLIMIT = 33554432
DEFAULT_MEMLIMIT = 1073741824

_KEY_ID_LEN = 8
_SECRET_LEN = 64
_CHECKSUM_LEN = 32
_SALT_LEN = 32
_KEYNUM_SK_LEN = _KEY_ID_LEN + _SECRET_LEN + _CHECKSUM_LEN


class MinisignError(PluginReleaseError):
    """A key file could not be decoded."""


def _b64decode(data: str, what: str) -> bytes:
    try:
        return base64.b64decode(data.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MinisignError(f"invalid base64 in {what}") from exc


def _split_comment(text: str, what: str) -> Tuple[str, str]:
    lines = text.replace("\r\n", "\n").split("\n")
    if len(lines) < 2 or not lines[0].startswith(UNTRUSTED_PREFIX):
        raise MinisignError(f"{what} must start with an untrusted comment")
    return lines[0][len(UNTRUSTED_PREFIX) :], lines[1]


def _key_id_hex(key_id: bytes) -> str:
    return "%016X" % struct.unpack("<Q", key_id)[0]


def _scrypt_params(opslimit: int, memlimit: int) -> Tuple[int, int, int]:
    """Translate libsodium ops/mem limits into scrypt (N, r, p)."""
    opslimit = max(opslimit, 32768)
    r = 8
    if opslimit < memlimit // 32:
        p = 1
        max_n = opslimit // (r * 4)
    else:
        max_n = memlimit // (r * 128)
    n_log2 = 1
    while n_log2 < 63 and (1 << n_log2) <= max_n // 2:
        n_log2 += 1
    if opslimit >= memlimit // 32:
        max_rp = min((opslimit // 4) // (1 << n_log2), 0x3FFFFFFF)
        p = max_rp // r
    return 1 << n_log2, r, max(p, 1)


def _keystream(password: str, salt: bytes, opslimit: int, memlimit: int) -> bytes:
    n, r, p = _scrypt_params(opslimit, memlimit)
    return Scrypt(salt=salt, length=_KEYNUM_SK_LEN, n=n, r=r, p=p).derive(password.encode("utf-8"))


def _xor(data: bytes, stream: bytes) -> bytes:
    return bytes(a ^ b for a, b in zip(data, stream))


@dataclass(frozen=True)
class PublicKey:
    key_id: bytes
    key: Ed25519PublicKey

    @classmethod
    def from_text(cls, text: str) -> "PublicKey":
        """Parse either a full public key file or its bare base64 line."""
        text = text.strip()
        encoded = _split_comment(text, "public key")[1] if text.startswith(UNTRUSTED_PREFIX) else text
        raw = _b64decode(encoded, "public key")
        if len(raw) != 2 + _KEY_ID_LEN + 32 or raw[:2] != SIG_ALG:
            raise MinisignError("unsupported public key format")
        return cls(
            key_id=raw[2 : 2 + _KEY_ID_LEN],
            key=Ed25519PublicKey.from_public_bytes(raw[2 + _KEY_ID_LEN :]),
        )

    @classmethod
    def from_file(cls, path: str) -> "PublicKey":
        try:
            with open(path, encoding="utf-8") as f:
                return cls.from_text(f.read())
        except OSError as exc:
            raise PluginIOError(path, exc.strerror or str(exc)) from exc

    @property
    def id_hex(self) -> str:
        return _key_id_hex(self.key_id)

    def raw_bytes(self) -> bytes:
        return self.key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)

    def __str__(self) -> str:
        """The base64 line, as passed to ``minisign -P``."""
        return base64.b64encode(SIG_ALG + self.key_id + self.raw_bytes()).decode("ascii")

    def to_text(self) -> str:
        return f"{UNTRUSTED_PREFIX}minisign public key: {self.id_hex}\n{self}\n"


@dataclass(frozen=True)
class PrivateKey:
    key_id: bytes
    key: Ed25519PrivateKey

    @classmethod
    def generate(cls) -> "PrivateKey":
        return cls(key_id=os.urandom(_KEY_ID_LEN), key=Ed25519PrivateKey.generate())

    @classmethod
    def from_text(cls, text: str, password: str = "") -> "PrivateKey":
        """Decode a minisign secret key, decrypting it with ``password``.

        Raises:
            MinisignError: If the key is malformed or the password is wrong.
        """
        _comment, encoded = _split_comment(text.strip(), "private key")
        raw = _b64decode(encoded, "private key")
        header_len = 6 + _SALT_LEN + 16
        if len(raw) != header_len + _KEYNUM_SK_LEN:
            raise MinisignError("unsupported private key format")
        sig_alg, kdf_alg, chk_alg = raw[0:2], raw[2:4], raw[4:6]
        if sig_alg != SIG_ALG or chk_alg != CHK_BLAKE2B:
            raise MinisignError("unsupported private key algorithm")
        salt = raw[6 : 6 + _SALT_LEN]
        opslimit, memlimit = struct.unpack("<QQ", raw[6 + _SALT_LEN : header_len])
        keynum_sk = raw[header_len:]
        if kdf_alg == KDF_SCRYPT:
            keynum_sk = _xor(keynum_sk, _keystream(password, salt, opslimit, memlimit))
        elif kdf_alg != KDF_NONE:
            raise MinisignError("unsupported private key kdf")

        key_id = keynum_sk[:_KEY_ID_LEN]
        secret = keynum_sk[_KEY_ID_LEN : _KEY_ID_LEN + _SECRET_LEN]
        checksum = keynum_sk[_KEY_ID_LEN + _SECRET_LEN :]
        expected = hashlib.blake2b(sig_alg + key_id + secret, digest_size=_CHECKSUM_LEN).digest()
        if checksum != expected:
            raise MinisignError("invalid private key checksum (wrong password?)")
        return cls(key_id=key_id, key=Ed25519PrivateKey.from_private_bytes(secret[:32]))

    @classmethod
    def from_file(cls, path: str, password: str = "") -> "PrivateKey":
        try:
            with open(path, encoding="utf-8") as f:
                text = f.read()
        except OSError as exc:
            raise PluginIOError(path, exc.strerror or str(exc)) from exc
        return cls.from_text(text, password)

    def public_key(self) -> PublicKey:
        return PublicKey(key_id=self.key_id, key=self.key.public_key())

    def to_text(
        self,
        password: str = "",
        *,
        opslimit: int = DEFAULT_OPSLIMIT,
        memlimit: int = DEFAULT_MEMLIMIT,
    ) -> str:
        """Encode the key, encrypted with scrypt when ``password`` is set."""
        seed = self.key.private_bytes(
            serialization.Encoding.Raw,
            serialization.PrivateFormat.Raw,
            serialization.NoEncryption(),
        )
        secret = seed + self.public_key().raw_bytes()
        checksum = hashlib.blake2b(SIG_ALG + self.key_id + secret, digest_size=_CHECKSUM_LEN).digest()
        keynum_sk = self.key_id + secret + checksum
        salt = os.urandom(_SALT_LEN)
        if password:
            kdf_alg = KDF_SCRYPT
            keynum_sk = _xor(keynum_sk, _keystream(password, salt, opslimit, memlimit))
        else:
            kdf_alg = KDF_NONE
        raw = (
            SIG_ALG
            + kdf_alg
            + CHK_BLAKE2B
            + salt
            + struct.pack("<QQ", opslimit, memlimit)
            + keynum_sk
        )
        encoded = base64.b64encode(raw).decode("ascii")
        return f"{UNTRUSTED_PREFIX}minisign encrypted secret key\n{encoded}\n"


def sign(private_key: PrivateKey, message: bytes, trusted_comment: Optional[str] = None) -> bytes:
    """Return a detached minisign signature file for ``message``."""
    if trusted_comment is None:
        trusted_comment = f"timestamp:{int(time.time())}"
    if "\n" in trusted_comment:
        raise ValueError("trusted comment must be a single line")
    digest = hashlib.blake2b(message, digest_size=64).digest()
    signature = private_key.key.sign(digest)
    global_signature = private_key.key.sign(signature + trusted_comment.encode("utf-8"))
    untrusted = f"signature from private key: {_key_id_hex(private_key.key_id)}"
    return (
        f"{UNTRUSTED_PREFIX}{untrusted}\n"
        f"{base64.b64encode(SIG_ALG_HASHED + private_key.key_id + signature).decode('ascii')}\n"
        f"{TRUSTED_PREFIX}{trusted_comment}\n"
        f"{base64.b64encode(global_signature).decode('ascii')}\n"
    ).encode("utf-8")


def verify(public_key: PublicKey, message: bytes, signature_file: bytes) -> bool:
    """Return True if ``signature_file`` is a valid signature of ``message``."""
    try:
        lines = signature_file.decode("utf-8").replace("\r\n", "\n").split("\n")
    except UnicodeDecodeError:
        return False
    if len(lines) < 4 or not lines[0].startswith(UNTRUSTED_PREFIX) or not lines[2].startswith(TRUSTED_PREFIX):
        return False
    try:
        raw = base64.b64decode(lines[1].strip(), validate=True)
        global_signature = base64.b64decode(lines[3].strip(), validate=True)
    except (binascii.Error, ValueError):
        return False
    if len(raw) != 2 + _KEY_ID_LEN + 64 or len(global_signature) != 64:
        return False
    algorithm, key_id, signature = raw[:2], raw[2 : 2 + _KEY_ID_LEN], raw[2 + _KEY_ID_LEN :]
    if key_id != public_key.key_id:
        return False
    if algorithm == SIG_ALG_HASHED:
        signed = hashlib.blake2b(message, digest_size=64).digest()
    elif algorithm == SIG_ALG:
        signed = message
    else:
        return False
    trusted_comment = lines[2][len(TRUSTED_PREFIX) :].encode("utf-8")
    try:
        public_key.key.verify(signature, signed)
        public_key.key.verify(global_signature, signature + trusted_comment)
    except InvalidSignature:
        return False
    return True
