"""
Stateless crypto helpers for the anonymous-identity core.

- RSA key pairs exchanged as PEM text (SubjectPublicKeyInfo / PKCS#8).
- RSA-PSS(SHA-256) signatures, hex encoded so they drop cleanly into JSON.
- SHA-256 hashing and HMAC-SHA256, hex encoded.
- Randomness only from the OS CSPRNG via `secrets`.

Every failure surfaces as CryptoError. Nothing here falls back to a weaker
source of randomness or swallows a bad key.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import secrets
from typing import Any, NamedTuple

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from persona_veil.errors import CryptoError

MIN_KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537


class KeyPair(NamedTuple):
    public_pem: str
    private_pem: str


# -----------------------------
# Randomness
# -----------------------------

def random_bytes(n: int) -> bytes:
    """n bytes from the OS CSPRNG."""
    if n <= 0:
        raise CryptoError(f"random_bytes needs a positive length, got {n}")
    try:
        return secrets.token_bytes(n)
    except (OSError, NotImplementedError) as exc:
        raise CryptoError("Entropy source unavailable") from exc


def random_hex(n: int) -> str:
    """Hex encoding of n random bytes (2n characters)."""
    return random_bytes(n).hex()


def random_below(upper: int) -> int:
    """Uniform CSPRNG integer in [0, upper)."""
    if upper <= 0:
        raise CryptoError(f"random_below needs a positive bound, got {upper}")
    try:
        return secrets.randbelow(upper)
    except (OSError, NotImplementedError) as exc:
        raise CryptoError("Entropy source unavailable") from exc


def random_choice(options: list[Any] | tuple[Any, ...]) -> Any:
    if not options:
        raise CryptoError("random_choice needs a non-empty sequence")
    return options[random_below(len(options))]


# -----------------------------
# Hashing
# -----------------------------

def _as_bytes(data: bytes | str) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else data


def hash_bytes(data: bytes | str) -> str:
    """SHA-256 hex digest. Strings are hashed as UTF-8."""
    return hashlib.sha256(_as_bytes(data)).hexdigest()


def hmac_digest(key: bytes | str, data: bytes | str) -> str:
    """HMAC-SHA256 hex digest."""
    key_bytes = _as_bytes(key)
    if not key_bytes:
        raise CryptoError("HMAC key must not be empty")
    return hmac.new(key_bytes, _as_bytes(data), hashlib.sha256).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def canonical_json_bytes(obj: dict) -> bytes:
    """Sorted keys, no whitespace variation, so digests are stable."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


# -------------
# RSA key utils
# -------------

def generate_key_pair(key_size: int = MIN_KEY_SIZE) -> KeyPair:
    """Fresh RSA key pair, PEM encoded. Key sizes below 2048 bits are refused."""
    if key_size < MIN_KEY_SIZE:
        raise CryptoError(f"RSA key size must be at least {MIN_KEY_SIZE} bits")
    try:
        priv = rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=key_size)
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise CryptoError("Key generation failed") from exc
    public_pem = priv.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    private_pem = priv.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return KeyPair(public_pem.decode("ascii"), private_pem.decode("ascii"))


def load_private_key(private_pem: str) -> rsa.RSAPrivateKey:
    try:
        key = serialization.load_pem_private_key(_as_bytes(private_pem), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise CryptoError("Invalid private key") from exc
    if not isinstance(key, rsa.RSAPrivateKey) or key.key_size < MIN_KEY_SIZE:
        raise CryptoError(f"Private key must be RSA with at least {MIN_KEY_SIZE} bits")
    return key


def load_public_key(public_pem: str) -> rsa.RSAPublicKey:
    try:
        key = serialization.load_pem_public_key(_as_bytes(public_pem))
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise CryptoError("Invalid public key") from exc
    if not isinstance(key, rsa.RSAPublicKey) or key.key_size < MIN_KEY_SIZE:
        raise CryptoError(f"Public key must be RSA with at least {MIN_KEY_SIZE} bits")
    return key


def public_pem_from_private(private_pem: str) -> str:
    pub = load_private_key(private_pem).public_key()
    return pub.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


# -------------------------
# Signing & Verification
# -------------------------

_PSS = padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.MAX_LENGTH)


def sign(content: bytes | str, private_pem: str) -> str:
    """RSA-PSS(SHA-256) signature over content, hex encoded.

    PSS salts every signature, so two signatures of the same content differ.
    """
    key = load_private_key(private_pem)
    try:
        return key.sign(_as_bytes(content), _PSS, hashes.SHA256()).hex()
    except ValueError as exc:
        raise CryptoError("Signing failed") from exc


def verify(content: bytes | str, signature_hex: str, public_pem: str) -> bool:
    """True only for a valid signature. A malformed signature is just False;
    a malformed key raises CryptoError."""
    key = load_public_key(public_pem)
    try:
        signature = bytes.fromhex(signature_hex)
    except (ValueError, TypeError):
        return False
    try:
        key.verify(signature, _as_bytes(content), _PSS, hashes.SHA256())
    except InvalidSignature:
        return False
    return True
