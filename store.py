import time
from datetime import datetime, timezone
from typing import List, Optional
from sqlalchemy.orm import Session
from crypto_utils import hash_refresh_token
from models import RefreshToken, User


def ms_to_datetime(ms: int) -> datetime:
    # naive UTC, matching the DateTime columns
    return datetime.fromtimestamp(ms / 1000, timezone.utc).replace(tzinfo=None)


class RefreshTokenStore:
    """Refresh-token records keyed by (user, device, secret).

    Callers only ever hand secrets in; the store keys rows by their HMAC.
    Every write commits before returning.
    """

    def __init__(self, db: Session, hash_key: bytes, clock=time.time):
        self.db = db
        self.hash_key = hash_key
        self.clock = clock

    def _now(self) -> datetime:
        return ms_to_datetime(int(self.clock() * 1000))

    def _hash(self, secret: str) -> str:
        return hash_refresh_token(secret, self.hash_key)

    def find(self, user_id: int, device_id: str, secret: str) -> Optional[RefreshToken]:
        return (
            self.db.query(RefreshToken)
            .filter_by(user_id=user_id, device_id=device_id, token_hash=self._hash(secret))
            .first()
        )

    def insert(self, user_id: int, device_id: str, secret: str, created_at: datetime, expires_at: datetime) -> RefreshToken:
        record = RefreshToken(
            user_id=user_id,
            device_id=device_id,
            token_hash=self._hash(secret),
            created_at=created_at,
            expires_at=expires_at,
            used=False,
            revoked=False,
        )
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)
        return record

    def mark_used(self, record_id: int) -> bool:
        """Flip used=false -> true in one conditional UPDATE.

        Returns False when another request already redeemed (or revoked) the
        row, so of two racing redemptions exactly one gets True.
        """
        updated = (
            self.db.query(RefreshToken)
            .filter(
                RefreshToken.id == record_id,
                RefreshToken.used.is_(False),
                RefreshToken.revoked.is_(False),
            )
            .update({"used": True, "used_at": self._now()}, synchronize_session=False)
        )
        self.db.commit()
        return updated == 1

    def revoke_device(self, user_id: int, device_id: str) -> int:
        revoked = (
            self.db.query(RefreshToken)
            .filter(
                RefreshToken.user_id == user_id,
                RefreshToken.device_id == device_id,
                RefreshToken.revoked.is_(False),
            )
            .update({"revoked": True, "revoked_at": self._now()}, synchronize_session=False)
        )
        self.db.commit()
        return revoked

    def for_device(self, user_id: int, device_id: str) -> List[RefreshToken]:
        return (
            self.db.query(RefreshToken)
            .filter_by(user_id=user_id, device_id=device_id)
            .order_by(RefreshToken.id)
            .all()
        )

    def active_sessions(self, user_id: int) -> List[RefreshToken]:
        return (
            self.db.query(RefreshToken)
            .filter(
                RefreshToken.user_id == user_id,
                RefreshToken.used.is_(False),
                RefreshToken.revoked.is_(False),
                RefreshToken.expires_at > self._now(),
            )
            .order_by(RefreshToken.created_at.desc())
            .all()
        )


class UserStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: int) -> Optional[User]:
        return self.db.get(User, user_id)

    def find_by_email(self, email: str) -> Optional[User]:
        return self.db.query(User).filter(User.email == email).first()

    def create(self, email: str, hashed_password: str, role: str = "user") -> User:
        user = User(email=email, hashed_password=hashed_password, role=role)
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user
