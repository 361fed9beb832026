import re
import secrets
import time
from dataclasses import dataclass
from jose import JWTError, jwt
from crypto_utils import EncryptionBox
from errors import ConfigurationError, DecryptionError, ExpiredTokenError, InvalidTokenError

_DURATION = re.compile(r"^(\d+)([smhdw])$")
_UNIT_MS = {
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "w": 7 * 24 * 60 * 60 * 1000,
}


def parse_duration(value: str) -> int:
    """Parse a duration like "15m" or "7d" into milliseconds."""
    match = _DURATION.fullmatch(value) if isinstance(value, str) else None
    if not match:
        raise ConfigurationError(f"Invalid time format: {value!r}")
    amount, unit = match.groups()
    return int(amount) * _UNIT_MS[unit]


@dataclass(frozen=True)
class RefreshTokenEnvelope:
    secret: str
    user_id: int
    device_id: str
    created_at: int  # epoch ms
    expires_at: int  # epoch ms

    def to_payload(self) -> dict:
        return {
            "secret": self.secret,
            "userId": self.user_id,
            "deviceId": self.device_id,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_payload(cls, payload) -> "RefreshTokenEnvelope":
        if not isinstance(payload, dict):
            raise InvalidTokenError("Refresh envelope is not an object")
        try:
            envelope = cls(
                secret=payload["secret"],
                user_id=payload["userId"],
                device_id=payload["deviceId"],
                created_at=payload["createdAt"],
                expires_at=payload["expiresAt"],
            )
        except KeyError as e:
            raise InvalidTokenError(f"Refresh envelope missing field {e}")
        if not isinstance(envelope.secret, str) or not envelope.secret:
            raise InvalidTokenError("Refresh envelope has no secret")
        if not isinstance(envelope.device_id, str) or not envelope.device_id:
            raise InvalidTokenError("Refresh envelope has no device id")
        for name in ("user_id", "created_at", "expires_at"):
            value = getattr(envelope, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidTokenError(f"Refresh envelope field {name} is not an integer")
        return envelope


class TokenManager:
    """Access-token signing plus refresh-envelope encryption.

    Built once at startup; a missing secret or an unparseable lifetime fails
    construction so the process never starts half-configured.
    """

    def __init__(
        self,
        secret: str,
        box: EncryptionBox,
        access_ttl: str = "15m",
        refresh_ttl: str = "7d",
        algorithm: str = "HS256",
        clock=time.time,
    ):
        if not secret:
            raise ConfigurationError("JWT_SECRET environment variable is required")
        self.secret = secret
        self.box = box
        self.algorithm = algorithm
        self.access_ttl_ms = parse_duration(access_ttl)
        self.refresh_ttl_ms = parse_duration(refresh_ttl)
        self.clock = clock

    def now_ms(self) -> int:
        return int(self.clock() * 1000)

    def generate_access_token(self, claims: dict) -> str:
        to_encode = dict(claims)
        issued_at = int(self.clock())
        to_encode.update({"iat": issued_at, "exp": issued_at + self.access_ttl_ms // 1000})
        return jwt.encode(to_encode, self.secret, algorithm=self.algorithm)

    def verify_access_token(self, token: str) -> dict:
        # python-jose would check "exp" against the wall clock; expiry follows self.clock instead
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm], options={"verify_exp": False})
        except JWTError as e:
            raise InvalidTokenError(f"Invalid access token: {e}", public_message="Invalid or expired token")

        expires = claims.get("exp")
        if isinstance(expires, bool) or not isinstance(expires, int):
            raise InvalidTokenError("Access token has no usable exp claim", public_message="Invalid or expired token")
        if int(self.clock()) >= expires:
            raise InvalidTokenError("Access token has expired", public_message="Invalid or expired token")
        return claims

    def generate_refresh_secret(self) -> str:
        return secrets.token_hex(40)

    def build_refresh_envelope(self, secret: str, user_id: int, device_id: str) -> RefreshTokenEnvelope:
        created_at = self.now_ms()
        return RefreshTokenEnvelope(
            secret=secret,
            user_id=user_id,
            device_id=device_id,
            created_at=created_at,
            expires_at=created_at + self.refresh_ttl_ms,
        )

    def encrypt_refresh_envelope(self, secret: str, user_id: int, device_id: str) -> str:
        return self.seal_envelope(self.build_refresh_envelope(secret, user_id, device_id))

    def seal_envelope(self, envelope: RefreshTokenEnvelope) -> str:
        return self.box.encrypt(envelope.to_payload())

    def decrypt_refresh_envelope(self, token: str) -> RefreshTokenEnvelope:
        try:
            payload = self.box.decrypt(token)
        except DecryptionError as e:
            raise InvalidTokenError(f"Invalid refresh token: {e}")
        return RefreshTokenEnvelope.from_payload(payload)

    def validate_envelope(self, envelope: RefreshTokenEnvelope) -> None:
        if self.now_ms() > envelope.expires_at:
            raise ExpiredTokenError("Refresh token has expired")
