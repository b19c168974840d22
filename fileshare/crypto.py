import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from fileshare.errors import BadRequest, DecryptionFailed

KEY_SIZE = 32
# Sealed blobs are nonce(12) || ciphertext || tag(16); stored rows depend on it.
NONCE_SIZE = 12
ID_SIZE = 16


def generate_key() -> bytes:
    return os.urandom(KEY_SIZE)


def generate_id() -> str:
    # No uniqueness check against the store; 128 random bits.
    return os.urandom(ID_SIZE).hex()


def parse_key(key_hex: str | None) -> bytes:
    # Wrong-length keys are left for open_sealed, after the file lookup.
    if not key_hex:
        raise BadRequest("missing key")
    try:
        return bytes.fromhex(key_hex)
    except ValueError as exc:
        raise BadRequest("invalid key: not a hex string") from exc


def seal(plaintext: bytes, key: bytes) -> bytes:
    if len(key) != KEY_SIZE:
        raise ValueError(f"key must be {KEY_SIZE} bytes")
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, None)


def open_sealed(blob: bytes, key: bytes) -> bytes:
    if len(key) != KEY_SIZE or len(blob) < NONCE_SIZE:
        raise DecryptionFailed()
    nonce, ciphertext = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except (InvalidTag, ValueError) as exc:
        raise DecryptionFailed() from exc
