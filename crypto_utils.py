import base64
import binascii
import hashlib
import hmac
import json
from Crypto.Cipher import AES
from Crypto.Random import get_random_bytes
from errors import ConfigurationError, DecryptionError

KEY_SIZE = 32  # AES-256
NONCE_SIZE = 12  # 96-bit GCM nonce
TAG_SIZE = 16  # 128-bit GCM tag


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _unb64(value) -> bytes:
    if not isinstance(value, str):
        raise ValueError("expected a base64 string")
    return base64.b64decode(value, validate=True)


class EncryptionBox:
    """AES-256-GCM around JSON payloads.

    Output is ``base64(JSON{iv, data, tag})`` with each field base64 encoded,
    so a blob carries everything needed to decrypt it. Nonces are drawn
    inside ``encrypt``; there is no way for a caller to supply one.
    """

    def __init__(self, key: bytes):
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
            raise ConfigurationError("Encryption key must be 32 bytes (256 bits)")
        self._key = bytes(key)

    def encrypt(self, payload) -> str:
        plaintext = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        cipher = AES.new(self._key, AES.MODE_GCM, nonce=get_random_bytes(NONCE_SIZE), mac_len=TAG_SIZE)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext)
        envelope = {"iv": _b64(cipher.nonce), "data": _b64(ciphertext), "tag": _b64(tag)}
        return _b64(json.dumps(envelope, separators=(",", ":")).encode("utf-8"))

    def decrypt(self, blob: str):
        try:
            envelope = json.loads(_unb64(blob))
            nonce = _unb64(envelope["iv"])
            ciphertext = _unb64(envelope["data"])
            tag = _unb64(envelope["tag"])
        except (ValueError, TypeError, KeyError, binascii.Error) as e:
            raise DecryptionError(f"Malformed encrypted payload: {e}")

        if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
            raise DecryptionError("Malformed encrypted payload: bad nonce or tag length")

        cipher = AES.new(self._key, AES.MODE_GCM, nonce=nonce, mac_len=TAG_SIZE)
        try:
            plaintext = cipher.decrypt_and_verify(ciphertext, tag)
        except ValueError:
            raise DecryptionError("Authentication tag mismatch")

        try:
            return json.loads(plaintext.decode("utf-8"))
        except ValueError as e:
            raise DecryptionError(f"Decrypted payload is not JSON: {e}")


def hash_refresh_token(token: str, key: bytes) -> str:
    """Hash a refresh secret using HMAC-SHA256.

    Args:
        token: The refresh secret to hash
        key: Server-side HMAC key

    Returns:
        Hexadecimal digest of the HMAC

    Raises:
        ValueError: If token is empty or not a string
    """
    if not isinstance(token, str) or not token:
        raise ValueError("Token must be a non-empty string")

    return hmac.new(key, token.encode(), hashlib.sha256).hexdigest()
