"""
Double-submit CSRF protection with an encrypted cookie.

The raw token goes to the client in the response body; the cookie holds the
same token encrypted together with its issue time, so nothing is stored
server-side.
"""
import hmac
import secrets
import time
from dataclasses import dataclass
from crypto_utils import EncryptionBox
from errors import CsrfError, DecryptionError

CSRF_COOKIE_NAME = "csrf_token"
CSRF_HEADER_NAME = "x-csrf-token"
CSRF_MAX_AGE_MS = 60 * 60 * 1000
STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass(frozen=True)
class CsrfToken:
    raw_token: str
    cookie_payload: str


class CsrfGuard:
    def __init__(self, box: EncryptionBox, clock=time.time, max_age_ms: int = CSRF_MAX_AGE_MS):
        self.box = box
        self.clock = clock
        self.max_age_ms = max_age_ms

    @property
    def max_age_seconds(self) -> int:
        return self.max_age_ms // 1000

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def issue_token(self) -> CsrfToken:
        raw = secrets.token_hex(32)
        cookie = self.box.encrypt({"token": raw, "timestamp": self._now_ms()})
        return CsrfToken(raw_token=raw, cookie_payload=cookie)

    @staticmethod
    def requires_validation(method: str) -> bool:
        return method.upper() in STATE_CHANGING_METHODS

    def validate(self, header_token, cookie_token) -> None:
        if not header_token or not cookie_token:
            raise CsrfError("CSRF header or cookie absent", public_message="CSRF token missing")

        try:
            payload = self.box.decrypt(cookie_token)
        except DecryptionError as e:
            raise CsrfError(f"CSRF cookie did not decrypt: {e}")

        token = payload.get("token") if isinstance(payload, dict) else None
        issued = payload.get("timestamp") if isinstance(payload, dict) else None
        if not isinstance(token, str) or isinstance(issued, bool) or not isinstance(issued, int):
            raise CsrfError("CSRF cookie payload malformed")

        if self._now_ms() - issued > self.max_age_ms:
            raise CsrfError("CSRF cookie older than max age", public_message="CSRF token expired")

        if not hmac.compare_digest(header_token.encode("utf-8"), token.encode("utf-8")):
            raise CsrfError("CSRF header does not match cookie", public_message="CSRF token invalid")
