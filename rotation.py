"""
Single-use refresh token rotation.

A lineage is every refresh record for one (user, device). Each redemption
marks the presented record used and issues the next one. A second redemption
of the same record can only come from someone holding a stale copy, so the
whole lineage is revoked and the caller has to log in again.
"""
from dataclasses import dataclass
from error_reporting import ErrorReporter
from errors import InvalidTokenError, TokenCompromisedError, UserNotFoundError
from logging_config import logger
from models import User
from store import RefreshTokenStore, UserStore, ms_to_datetime
from token_manager import TokenManager


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


def access_claims(user: User) -> dict:
    return {"sub": str(user.id), "email": user.email, "role": user.role}


def issue_refresh_token(*, store: RefreshTokenStore, token_manager: TokenManager, user_id: int, device_id: str) -> str:
    """Create a fresh record for the lineage and return its encrypted envelope."""
    secret = token_manager.generate_refresh_secret()
    envelope = token_manager.build_refresh_envelope(secret, user_id, device_id)
    store.insert(
        user_id=user_id,
        device_id=device_id,
        secret=secret,
        created_at=ms_to_datetime(envelope.created_at),
        expires_at=ms_to_datetime(envelope.expires_at),
    )
    return token_manager.seal_envelope(envelope)


def issue_token_pair(*, store: RefreshTokenStore, token_manager: TokenManager, user: User, device_id: str) -> TokenPair:
    access_token = token_manager.generate_access_token(access_claims(user))
    refresh_token = issue_refresh_token(store=store, token_manager=token_manager, user_id=user.id, device_id=device_id)
    return TokenPair(access_token=access_token, refresh_token=refresh_token)


def revoke_device_tokens(*, store: RefreshTokenStore, user_id: int, device_id: str) -> int:
    revoked = store.revoke_device(user_id, device_id)
    logger.info(f"Revoked {revoked} refresh token(s) for user={user_id} device={device_id}")
    return revoked


def _reuse_detected(*, store: RefreshTokenStore, reporter: ErrorReporter, user_id: int, device_id: str):
    # Revocation has to land before the caller learns anything.
    store.revoke_device(user_id, device_id)
    reporter.capture_message(
        "Refresh token reuse detected",
        {"userId": user_id, "deviceId": device_id},
        "warning",
    )
    return TokenCompromisedError(f"Refresh token reuse for user={user_id} device={device_id}")


def rotate_refresh_token(
    *,
    store: RefreshTokenStore,
    users: UserStore,
    token_manager: TokenManager,
    reporter: ErrorReporter,
    refresh_token: str,
) -> TokenPair:
    # 1-2. Nothing touches the store until the envelope decrypts and is current.
    envelope = token_manager.decrypt_refresh_envelope(refresh_token)
    token_manager.validate_envelope(envelope)

    # 3. Exact match on (user, device, secret); revoked rows count as absent.
    record = store.find(envelope.user_id, envelope.device_id, envelope.secret)
    if record is None or record.revoked:
        raise InvalidTokenError(
            f"No live record for user={envelope.user_id} device={envelope.device_id}",
            public_message="Refresh token not found or revoked",
        )

    # 4. Replay of an already rotated token.
    if record.used:
        raise _reuse_detected(store=store, reporter=reporter, user_id=envelope.user_id, device_id=envelope.device_id)

    # 5. Conditional update; losing the race is the same signal as step 4.
    if not store.mark_used(record.id):
        raise _reuse_detected(store=store, reporter=reporter, user_id=envelope.user_id, device_id=envelope.device_id)

    # 6.
    user = users.get(envelope.user_id)
    if user is None:
        raise UserNotFoundError(f"User {envelope.user_id} no longer exists")

    # 7-8.
    return issue_token_pair(store=store, token_manager=token_manager, user=user, device_id=envelope.device_id)
