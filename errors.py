class ConfigurationError(RuntimeError):
    """Missing or malformed key material / settings. Raised at startup only."""


class AuthError(Exception):
    """Base for request-time token failures.

    `str(exc)` is the internal reason that goes to the logs. `public_message`
    is the only thing the client ever sees.
    """

    status_code = 401
    default_public_message = "Unauthorized"

    def __init__(self, message: str = "", public_message: str = None):
        super().__init__(message or self.default_public_message)
        self.public_message = public_message or self.default_public_message


class DecryptionError(AuthError):
    default_public_message = "Invalid refresh token"


class InvalidTokenError(AuthError):
    default_public_message = "Invalid refresh token"


class ExpiredTokenError(AuthError):
    default_public_message = "Invalid refresh token"


class TokenCompromisedError(AuthError):
    default_public_message = "Token compromised, please login again"


class UserNotFoundError(AuthError):
    default_public_message = "User not found"


class CsrfError(AuthError):
    status_code = 403
    default_public_message = "CSRF validation failed"
