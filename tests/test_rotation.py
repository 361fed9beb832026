from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace

import pytest

from errors import ExpiredTokenError, InvalidTokenError, TokenCompromisedError, UserNotFoundError
from models import RefreshToken, User
from rotation import issue_token_pair, revoke_device_tokens, rotate_refresh_token
from store import RefreshTokenStore, UserStore, ms_to_datetime
from tests._helpers.fakes import FakeClock, RecordingReporter


@pytest.fixture
def db(app):
    session = app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store(db, settings, clock: FakeClock) -> RefreshTokenStore:
    return RefreshTokenStore(db, settings.REFRESH_TOKEN_HASH_KEY, clock=clock)


@pytest.fixture
def users(db) -> UserStore:
    return UserStore(db)


@pytest.fixture
def user(users: UserStore) -> User:
    return users.create(email="officer@lark-pd.org", hashed_password="not-a-real-hash", role="officer")


@pytest.fixture
def rotate(app, store: RefreshTokenStore, users: UserStore, reporter: RecordingReporter):
    def _rotate(refresh_token: str):
        return rotate_refresh_token(
            store=store,
            users=users,
            token_manager=app.state.token_manager,
            reporter=reporter,
            refresh_token=refresh_token,
        )

    return _rotate


def _records(app, user_id: int, device_id: str) -> list[RefreshToken]:
    session = app.state.session_factory()
    try:
        return RefreshTokenStore(session, app.state.settings.REFRESH_TOKEN_HASH_KEY).for_device(user_id, device_id)
    finally:
        session.close()


def _live(records: list[RefreshToken]) -> list[RefreshToken]:
    return [r for r in records if not r.used and not r.revoked]


def _login(app, store: RefreshTokenStore, user: User, device_id: str = "device-1"):
    return issue_token_pair(store=store, token_manager=app.state.token_manager, user=user, device_id=device_id)


def test_login_creates_one_unused_record(app, store, user) -> None:
    _login(app, store, user)
    records = _records(app, user.id, "device-1")
    assert len(records) == 1
    assert records[0].used is False
    assert records[0].revoked is False
    assert records[0].used_at is None


def test_rotation_issues_new_pair_and_marks_old_used(app, store, user, rotate) -> None:
    first = _login(app, store, user)

    second = rotate(first.refresh_token)

    assert second.refresh_token != first.refresh_token
    claims = app.state.token_manager.verify_access_token(second.access_token)
    assert claims["sub"] == str(user.id)
    assert claims["email"] == "officer@lark-pd.org"
    assert claims["role"] == "officer"

    old, new = _records(app, user.id, "device-1")
    assert old.used is True and old.used_at is not None
    assert new.used is False and new.revoked is False

    envelope = app.state.token_manager.decrypt_refresh_envelope(second.refresh_token)
    assert (envelope.user_id, envelope.device_id) == (user.id, "device-1")


def test_chain_of_rotations_keeps_exactly_one_live_record(app, store, user, rotate) -> None:
    pair = _login(app, store, user)
    for _ in range(5):
        pair = rotate(pair.refresh_token)

    records = _records(app, user.id, "device-1")
    assert len(records) == 6
    assert len(_live(records)) == 1


def test_replay_revokes_whole_device_lineage(app, store, user, rotate, reporter) -> None:
    first = _login(app, store, user)
    second = rotate(first.refresh_token)

    with pytest.raises(TokenCompromisedError):
        rotate(first.refresh_token)

    records = _records(app, user.id, "device-1")
    assert all(r.revoked and r.revoked_at is not None for r in records)
    assert _live(records) == []
    assert reporter.messages == [
        ("Refresh token reuse detected", {"userId": user.id, "deviceId": "device-1"}, "warning")
    ]

    # the newest token was swept up too
    with pytest.raises(InvalidTokenError) as exc:
        rotate(second.refresh_token)
    assert exc.value.public_message == "Refresh token not found or revoked"


def test_replay_leaves_other_devices_alone(app, store, user, rotate) -> None:
    phone = _login(app, store, user, device_id="phone")
    laptop = _login(app, store, user, device_id="laptop")
    rotate(phone.refresh_token)

    with pytest.raises(TokenCompromisedError):
        rotate(phone.refresh_token)

    assert _live(_records(app, user.id, "phone")) == []
    assert len(_live(_records(app, user.id, "laptop"))) == 1
    rotate(laptop.refresh_token)


def test_lost_race_on_mark_used_is_treated_as_reuse(app, store, user, rotate, reporter, monkeypatch) -> None:
    pair = _login(app, store, user)
    envelope = app.state.token_manager.decrypt_refresh_envelope(pair.refresh_token)
    record = store.find(envelope.user_id, envelope.device_id, envelope.secret)

    # A concurrent request redeemed the record after this one read it.
    assert store.mark_used(record.id) is True
    stale = SimpleNamespace(id=record.id, used=False, revoked=False)
    monkeypatch.setattr(store, "find", lambda *args: stale)

    with pytest.raises(TokenCompromisedError):
        rotate(pair.refresh_token)

    assert _live(_records(app, user.id, "device-1")) == []
    assert [m[0] for m in reporter.messages] == ["Refresh token reuse detected"]


def test_mark_used_succeeds_once(app, store, user) -> None:
    _login(app, store, user)
    (record,) = _records(app, user.id, "device-1")
    assert store.mark_used(record.id) is True
    assert store.mark_used(record.id) is False


def test_mark_used_refuses_revoked_record(app, store, user) -> None:
    _login(app, store, user)
    (record,) = _records(app, user.id, "device-1")
    revoke_device_tokens(store=store, user_id=user.id, device_id="device-1")
    assert store.mark_used(record.id) is False


def test_undecryptable_token_does_not_touch_store(app, store, user, rotate, monkeypatch) -> None:
    def _boom(*args):
        raise AssertionError("store must not be consulted")

    monkeypatch.setattr(store, "find", _boom)
    with pytest.raises(InvalidTokenError) as exc:
        rotate("definitely-not-a-token")
    assert exc.value.public_message == "Invalid refresh token"


def test_expired_envelope_fails_regardless_of_record(app, store, user, rotate, clock: FakeClock) -> None:
    pair = _login(app, store, user)
    clock.advance(7 * 24 * 3600 + 1)

    with pytest.raises(ExpiredTokenError):
        rotate(pair.refresh_token)

    # record untouched, still unused
    (record,) = _records(app, user.id, "device-1")
    assert record.used is False


def test_envelope_for_unknown_secret_is_rejected(app, store, user, rotate) -> None:
    _login(app, store, user)
    forged = app.state.token_manager.encrypt_refresh_envelope("f" * 80, user.id, "device-1")
    with pytest.raises(InvalidTokenError) as exc:
        rotate(forged)
    assert exc.value.public_message == "Refresh token not found or revoked"


def test_envelope_for_other_device_is_rejected(app, store, user, rotate) -> None:
    pair = _login(app, store, user)
    envelope = app.state.token_manager.decrypt_refresh_envelope(pair.refresh_token)
    moved = app.state.token_manager.encrypt_refresh_envelope(envelope.secret, user.id, "device-2")
    with pytest.raises(InvalidTokenError):
        rotate(moved)


def test_deleted_user_is_rejected(app, store, user, rotate, db) -> None:
    pair = _login(app, store, user)
    user_id = user.id
    db.query(User).filter_by(id=user_id).delete()
    db.commit()

    with pytest.raises(UserNotFoundError):
        rotate(pair.refresh_token)

    # the presented token was still consumed
    (record,) = _records(app, user_id, "device-1")
    assert record.used is True


def test_revoked_record_is_treated_as_absent(app, store, user, rotate, reporter) -> None:
    pair = _login(app, store, user)
    assert revoke_device_tokens(store=store, user_id=user.id, device_id="device-1") == 1

    with pytest.raises(InvalidTokenError):
        rotate(pair.refresh_token)
    assert reporter.messages == []


def test_record_timestamps_follow_service_clock(app, store, user, rotate, clock: FakeClock) -> None:
    first = _login(app, store, user)
    issued = ms_to_datetime(int(clock() * 1000))

    clock.advance(90)
    rotate(first.refresh_token)
    old, new = _records(app, user.id, "device-1")
    assert old.created_at == issued
    assert old.used_at == ms_to_datetime(int(clock() * 1000))
    assert new.expires_at == new.created_at + timedelta(days=7)

    clock.advance(30)
    revoke_device_tokens(store=store, user_id=user.id, device_id="device-1")
    (_, new) = _records(app, user.id, "device-1")
    assert new.revoked_at == ms_to_datetime(int(clock() * 1000))


def test_active_sessions_expire_on_service_clock(app, store, user, clock: FakeClock) -> None:
    _login(app, store, user, device_id="phone")
    assert [s.device_id for s in store.active_sessions(user.id)] == ["phone"]

    clock.advance(7 * 24 * 3600 + 1)
    assert store.active_sessions(user.id) == []
