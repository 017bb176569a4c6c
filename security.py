from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel

from config import ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, SECRET_KEY
from schemas import ADMIN_ROLES

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/token")

SENSITIVE_USER_FIELDS = ("password_hash", "otp", "otp_expires", "otp_last_sent_at", "reset_password_token", "reset_password_expires")


class CurrentUser(BaseModel):
    id: str
    name: Optional[str] = None
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


def verify_password(plain_password, hashed_password):
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def token_for_user(user: dict) -> str:
    return create_access_token({"sub": str(user["_id"]), "name": user.get("name"), "role": user.get("role", "user")})


def decode_access_token(token: str) -> Optional[CurrentUser]:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    user_id = payload.get("sub")
    if user_id is None:
        return None
    return CurrentUser(id=user_id, name=payload.get("name"), role=payload.get("role") or "user")


def sanitize_user(user: Optional[dict]) -> Optional[dict]:
    if not user:
        return None
    clean = {k: v for k, v in user.items() if k not in SENSITIVE_USER_FIELDS}
    if "_id" in clean:
        clean["id"] = str(clean.pop("_id"))
    return clean


def get_current_user(token: str = Depends(oauth2_scheme)) -> CurrentUser:
    current = decode_access_token(token)
    if current is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token", headers={"WWW-Authenticate": "Bearer"})
    return current


def require_roles(*roles):
    def checker(current: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current.role not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return current
    return checker


require_admin = require_roles(*ADMIN_ROLES)
