import logging
import traceback
from typing import Optional
import sentry_sdk
from logging_config import logger

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}


class ErrorReporter:
    """Alerting sink for security events and unexpected failures.

    Every event becomes one log record. When Sentry is enabled the same event
    is also sent there, with the context attached as extras.
    """

    def __init__(self, log: logging.Logger = logger, sentry_enabled: bool = False):
        self.log = log
        self.sentry_enabled = sentry_enabled

    @classmethod
    def from_settings(cls, settings) -> "ErrorReporter":
        dsn = settings.SENTRY_DSN
        if not dsn:
            logger.warning("Sentry DSN not provided, error reporting goes to the log only")
            return cls()

        try:
            sentry_sdk.init(
                dsn=dsn,
                environment=settings.APP_ENV,
                traces_sample_rate=0.1 if settings.is_production else 1.0,
            )
        except Exception as e:
            logger.error(f"Failed to initialize Sentry: {e}")
            return cls()

        logger.info("Sentry error reporting enabled")
        return cls(sentry_enabled=True)

    def capture_message(self, message: str, context: Optional[dict] = None, level: str = "info"):
        context = context or {}
        extras = " ".join(f"{k}={v}" for k, v in sorted(context.items()))
        self.log.log(_LEVELS.get(level, logging.INFO), f"[alert] {message} {extras}".rstrip())
        if self.sentry_enabled:
            sentry_sdk.capture_message(message, level=level, extras=dict(context))

    def capture_exception(self, exc: BaseException, context: Optional[dict] = None):
        context = context or {}
        extras = " ".join(f"{k}={v}" for k, v in sorted(context.items()))
        self.log.error(f"[exception] {type(exc).__name__}: {exc} {extras}".rstrip())
        self.log.error("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
        if self.sentry_enabled:
            sentry_sdk.capture_exception(exc, extras=dict(context))
