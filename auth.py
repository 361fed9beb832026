from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from passlib.context import CryptContext
from deps import get_token_manager, get_user_store
from errors import InvalidTokenError
from models import User
from store import UserStore
from token_manager import TokenManager

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="login")

def hash_password(password: str):
    return pwd_context.hash(password)

def verify_password(plain_password: str, hashed_password: str):
    return pwd_context.verify(plain_password, hashed_password)

def get_current_user(
    token: str = Depends(oauth2_scheme),
    token_manager: TokenManager = Depends(get_token_manager),
    users: UserStore = Depends(get_user_store),
) -> User:
    claims = token_manager.verify_access_token(token)

    subject = claims.get("sub")
    if not subject or not str(subject).isdigit():
        raise InvalidTokenError("Access token has no usable subject", public_message="Invalid or expired token")

    user = users.get(int(subject))
    if user is None:
        raise InvalidTokenError(f"Access token subject {subject} does not exist", public_message="Invalid or expired token")
    return user
