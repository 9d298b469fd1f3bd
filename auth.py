from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, Header, Request
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.errors import DuplicateKeyError

import config
from database import Store, oid, serialize_doc, utcnow
from errors import Forbidden, NotFound, Unauthorized, ValidationError
from schemas import RegisterInput, User, UserUpdate

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError:
        raise Unauthorized("Invalid or expired token")


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    # Never send password hash
    user = serialize_doc(user)
    user.pop("password_hash", None)
    return user


def get_store(request: Request) -> Store:
    return request.app.state.store


# Dependency to get current user

def get_current_user(authorization: Optional[str] = Header(default=None), store: Store = Depends(get_store)):
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthorized("Not authenticated")
    token = authorization.split(" ", 1)[1]
    payload = decode_token(token)
    user_id = payload.get("sub")
    if not user_id:
        raise Unauthorized("Invalid token")
    try:
        user = store.find_by_id("user", user_id)
    except ValidationError:
        raise Unauthorized("Invalid token")
    if not user:
        raise Unauthorized("User not found")
    return public_user(user)


class Accounts:
    def __init__(self, store: Store):
        self.store = store

    def register(self, payload: RegisterInput) -> Dict[str, Any]:
        if payload.password != payload.confirm_password:
            raise ValidationError("Passwords do not match")
        email = payload.email.lower()
        if self.store.find_one("user", {"email": email}):
            raise ValidationError("Email already registered")
        user = User(
            username=payload.username,
            email=email,
            password_hash=hash_password(payload.password),
            phone=payload.phone,
            address=payload.address,
        )
        try:
            user_id = self.store.create("user", user)
        except DuplicateKeyError:
            raise ValidationError("Email already registered")
        return public_user(self.store.find_by_id("user", user_id))

    def login(self, email: str, password: str) -> Dict[str, Any]:
        user = self.store.find_one("user", {"email": email.lower()})
        if not user:
            raise NotFound("User not found")
        if not verify_password(password, user.get("password_hash", "")):
            raise ValidationError("Wrong password")
        token = create_access_token({"sub": str(user["_id"]), "username": user.get("username")})
        return {**public_user(user), "accessToken": token}

    def get_user(self, current_user: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        if current_user["id"] != user_id:
            raise Forbidden("You can only view your own account")
        user = self.store.find_by_id("user", user_id)
        if not user:
            raise NotFound("User not found")
        return public_user(user)

    def update_user(self, current_user: Dict[str, Any], user_id: str, data: UserUpdate) -> Dict[str, Any]:
        if current_user["id"] != user_id:
            raise Forbidden("You can only update your own account")
        update = data.model_dump(exclude_unset=True, exclude_none=True)
        password = update.pop("password", None)
        if password:
            update["password_hash"] = hash_password(password)
        if "email" in update:
            update["email"] = update["email"].lower()
        if not update:
            raise ValidationError("No fields to update")
        update["updated_at"] = utcnow()
        try:
            self.store.update_by_id("user", oid(user_id), update)
        except DuplicateKeyError:
            raise ValidationError("Email already registered")
        return self.get_user(current_user, user_id)
