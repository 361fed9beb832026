import time
from contextlib import asynccontextmanager
from uuid import uuid4
from fastapi import APIRouter, FastAPI, Depends, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi_limiter import FastAPILimiter
from redis.asyncio import Redis
from auth import hash_password, verify_password, get_current_user
from config import Settings
from crypto_utils import EncryptionBox
from csrf import CSRF_COOKIE_NAME, CsrfGuard
from database import init_db, make_engine, make_session_factory
from deps import (
    csrf_protect,
    get_csrf_guard,
    get_refresh_store,
    get_reporter,
    get_settings,
    get_token_manager,
    get_user_store,
    rate_limit,
)
from error_reporting import ErrorReporter
from errors import AuthError, ConfigurationError, InvalidTokenError
from logging_config import logger
from models import User
from rotation import issue_token_pair, revoke_device_tokens, rotate_refresh_token
from schemas import (
    CsrfTokenOut,
    LoginOut,
    RefreshTokenRequest,
    SessionInfo,
    SessionInfoList,
    TokenPairOut,
    UserLoginWithDevice,
    UserOut,
    UserRegister,
)
from store import RefreshTokenStore, UserStore
from token_manager import TokenManager

router = APIRouter()
sessions_router = APIRouter(prefix="/sessions", dependencies=[Depends(csrf_protect)])


@router.get("/health")
def health_check():
    logger.info("Health check pinged")
    return {"status": "ok"}


@router.post("/register", response_model=UserOut, status_code=201, dependencies=[rate_limit(3, 60)])
def register(user: UserRegister, users: UserStore = Depends(get_user_store)):
    # Check if email already registered
    if users.find_by_email(user.email):
        raise HTTPException(status_code=409, detail="Email already registered")

    return users.create(email=user.email, hashed_password=hash_password(user.password))


# Login route
@router.post("/login", response_model=LoginOut, dependencies=[rate_limit(5, 60)])
def login(
    user: UserLoginWithDevice,
    users: UserStore = Depends(get_user_store),
    store: RefreshTokenStore = Depends(get_refresh_store),
    token_manager: TokenManager = Depends(get_token_manager),
):
    db_user = users.find_by_email(user.email)
    if not db_user or not verify_password(user.password, db_user.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    device_id = user.device_id or str(uuid4())

    # A new login starts a new lineage for this device
    revoke_device_tokens(store=store, user_id=db_user.id, device_id=device_id)
    pair = issue_token_pair(store=store, token_manager=token_manager, user=db_user, device_id=device_id)

    logger.info(f"Login user={db_user.id} device={device_id}")
    return LoginOut(access_token=pair.access_token, refresh_token=pair.refresh_token, device_id=device_id)


@router.post("/refresh", response_model=TokenPairOut, dependencies=[rate_limit(10, 60)])
def refresh_token(
    body: RefreshTokenRequest,
    store: RefreshTokenStore = Depends(get_refresh_store),
    users: UserStore = Depends(get_user_store),
    token_manager: TokenManager = Depends(get_token_manager),
    reporter: ErrorReporter = Depends(get_reporter),
):
    pair = rotate_refresh_token(
        store=store,
        users=users,
        token_manager=token_manager,
        reporter=reporter,
        refresh_token=body.refresh_token,
    )
    return TokenPairOut(access_token=pair.access_token, refresh_token=pair.refresh_token)


@router.get("/csrf-token", response_model=CsrfTokenOut)
def csrf_token(
    response: Response,
    guard: CsrfGuard = Depends(get_csrf_guard),
    settings: Settings = Depends(get_settings),
):
    token = guard.issue_token()
    response.set_cookie(
        key=CSRF_COOKIE_NAME,
        value=token.cookie_payload,
        max_age=guard.max_age_seconds,
        path="/",
        secure=settings.is_production,
        httponly=True,
        samesite="strict",
    )
    return CsrfTokenOut(csrf_token=token.raw_token)


@router.get("/me", response_model=UserOut)
def me(current_user: User = Depends(get_current_user)):
    return current_user


@router.post("/logout", dependencies=[Depends(csrf_protect), rate_limit(10, 60)])
def logout(
    body: RefreshTokenRequest,
    current_user: User = Depends(get_current_user),
    store: RefreshTokenStore = Depends(get_refresh_store),
    token_manager: TokenManager = Depends(get_token_manager),
):
    envelope = token_manager.decrypt_refresh_envelope(body.refresh_token)
    if envelope.user_id != current_user.id:
        raise InvalidTokenError(f"User {current_user.id} presented a refresh token of user {envelope.user_id}")

    revoke_device_tokens(store=store, user_id=current_user.id, device_id=envelope.device_id)
    return {"message": "Logged out successfully"}


@sessions_router.get("", response_model=SessionInfoList, dependencies=[rate_limit(20, 60)])
def get_active_sessions(
    current_user: User = Depends(get_current_user),
    store: RefreshTokenStore = Depends(get_refresh_store),
):
    sessions = [
        SessionInfo(device_id=record.device_id, created_at=record.created_at, expires_at=record.expires_at)
        for record in store.active_sessions(current_user.id)
    ]
    return SessionInfoList(sessions=sessions)


@sessions_router.delete("/{device_id}", dependencies=[rate_limit(10, 60)])
def revoke_session(
    device_id: str,
    current_user: User = Depends(get_current_user),
    store: RefreshTokenStore = Depends(get_refresh_store),
):
    if revoke_device_tokens(store=store, user_id=current_user.id, device_id=device_id):
        return {"message": "Session revoked"}
    raise HTTPException(status_code=404, detail="Session not found")


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(AuthError)
    async def auth_exception_handler(request: Request, exc: AuthError):
        # Specific kind stays in the logs; the client only sees the public message
        logger.warning(f"{type(exc).__name__}: {exc} at {request.method} {request.url.path}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.public_message})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        if first.get("type") == "missing" and first.get("loc"):
            message = f"{first['loc'][-1]} is required"
        else:
            message = "Invalid request"
        logger.warning(f"Validation error at {request.method} {request.url.path}: {message}")
        return JSONResponse(status_code=400, content={"error": message})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        logger.warning(f"HTTPException: {exc.status_code} - {exc.detail} at {request.method} {request.url.path}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def internal_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception at {request.method} {request.url.path}")
        request.app.state.reporter.capture_exception(exc, {"path": request.url.path})
        return JSONResponse(
            status_code=500,
            content={"error": "Internal Server Error"},
        )


def create_app(settings: Settings = None, reporter: ErrorReporter = None, clock=time.time) -> FastAPI:
    """Build the services once and wire them into a FastAPI app.

    Any ConfigurationError (missing JWT secret, bad key, bad lifetime) is
    raised from here, before the server accepts a request.
    """
    settings = settings or Settings()
    if settings.ENCRYPTION_KEY is None:
        raise ConfigurationError("ENCRYPTION_KEY environment variable is required")

    box = EncryptionBox(settings.ENCRYPTION_KEY)
    token_manager = TokenManager(
        settings.JWT_SECRET,
        box,
        access_ttl=settings.JWT_EXPIRES_IN,
        refresh_ttl=settings.REFRESH_TOKEN_EXPIRES_IN,
        algorithm=settings.JWT_ALGORITHM,
        clock=clock,
    )
    csrf_guard = CsrfGuard(box, clock=clock)

    engine = make_engine(settings.DATABASE_URL)
    if not settings.SKIP_DB_INIT:
        init_db(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Use configurable URL; no URL means no rate limiting
        if settings.REDIS_URL:
            redis = Redis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
            app.state.redis = redis
            await FastAPILimiter.init(redis)
        try:
            yield
        finally:
            redis = app.state.redis
            if redis:
                try:
                    await redis.close()
                except Exception as e:
                    logger.warning(f"Redis close failed: {e}")
                app.state.redis = None
            engine.dispose()

    app = FastAPI(title="Lark auth", lifespan=lifespan)
    app.state.settings = settings
    app.state.token_manager = token_manager
    app.state.csrf_guard = csrf_guard
    app.state.reporter = reporter or ErrorReporter.from_settings(settings)
    app.state.session_factory = make_session_factory(engine)
    app.state.redis = None

    register_exception_handlers(app)
    app.include_router(router)
    app.include_router(sessions_router)

    logger.info(f"Auth service configured (env={settings.APP_ENV})")
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:create_app", factory=True, host="0.0.0.0", port=8000)
