"""
FastAPI dependencies. Services are built once by ``create_app`` and hung off
``app.state``; nothing here constructs them.
"""
from fastapi import Depends, Request, Response
from fastapi_limiter.depends import RateLimiter
from sqlalchemy.orm import Session
from config import Settings
from csrf import CSRF_COOKIE_NAME, CSRF_HEADER_NAME, CsrfGuard
from error_reporting import ErrorReporter
from store import RefreshTokenStore, UserStore
from token_manager import TokenManager


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_token_manager(request: Request) -> TokenManager:
    return request.app.state.token_manager


def get_csrf_guard(request: Request) -> CsrfGuard:
    return request.app.state.csrf_guard


def get_reporter(request: Request) -> ErrorReporter:
    return request.app.state.reporter


# Dependency to get DB session
def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_refresh_store(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    token_manager: TokenManager = Depends(get_token_manager),
) -> RefreshTokenStore:
    return RefreshTokenStore(db, settings.REFRESH_TOKEN_HASH_KEY, clock=token_manager.clock)


def get_user_store(db: Session = Depends(get_db)) -> UserStore:
    return UserStore(db)


def csrf_protect(request: Request, guard: CsrfGuard = Depends(get_csrf_guard)) -> None:
    if not guard.requires_validation(request.method):
        return
    guard.validate(request.headers.get(CSRF_HEADER_NAME), request.cookies.get(CSRF_COOKIE_NAME))


def rate_limit(times: int, seconds: int):
    """RateLimiter that stands down when the app started without Redis."""
    limiter = RateLimiter(times=times, seconds=seconds)

    async def _limit(request: Request, response: Response):
        if getattr(request.app.state, "redis", None) is None:
            return
        await limiter(request, response)

    return Depends(_limit)
