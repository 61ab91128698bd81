"""Who is calling.

Login hands out a signed bearer token carrying the user's id. Administrators
are recognised either by the ``is_admin`` flag on their account or by the
shared admin key header.
"""
import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import bcrypt
import jwt
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import now_utc, parse_object_id
from errors import DuplicateError, InvalidIdError, NotAuthenticatedError, NotAuthorizedError
from schemas import User

TOKEN_ALGORITHM = "HS256"


@dataclass(frozen=True)
class Actor:
    user_id: Optional[str]
    is_admin: bool = False
    email: Optional[str] = None
    name: Optional[str] = None

    def owns(self, order: Dict[str, Any]) -> bool:
        return self.user_id is not None and order.get("user_id") == self.user_id


def hash_password(pw: str) -> str:
    return bcrypt.hashpw(pw.encode(), bcrypt.gensalt()).decode()


def check_password(pw: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    return bcrypt.checkpw(pw.encode(), password_hash.encode())


class Authenticator:
    def __init__(self, db: Database, admin_key: str, jwt_secret: str,
                 token_ttl: timedelta = timedelta(days=7), clock: Callable[[], datetime] = now_utc):
        self._users = db["user"]
        self._admin_key = admin_key
        self._jwt_secret = jwt_secret
        self._token_ttl = token_ttl
        self._clock = clock

    def _is_admin_key(self, key: Optional[str]) -> bool:
        return bool(key) and hmac.compare_digest(key, self._admin_key)

    def issue_token(self, user_id: str) -> str:
        now = self._clock()
        payload = {"id": user_id, "iat": now, "exp": now + self._token_ttl}
        return jwt.encode(payload, self._jwt_secret, algorithm=TOKEN_ALGORITHM)

    def _user_id_from(self, token: str) -> Optional[str]:
        try:
            claims = jwt.decode(token, self._jwt_secret, algorithms=[TOKEN_ALGORITHM])
        except jwt.InvalidTokenError:
            return None
        return claims.get("id")

    def resolve(self, token: Optional[str], admin_key: Optional[str] = None) -> Actor:
        if not token:
            if self._is_admin_key(admin_key):
                return Actor(user_id=None, is_admin=True)
            raise NotAuthenticatedError("Not authorized, no token")
        user_id = self._user_id_from(token)
        if not user_id:
            raise NotAuthenticatedError("Not authorized, invalid token")
        try:
            user = self._users.find_one({"_id": parse_object_id(user_id)})
        except InvalidIdError:
            user = None
        if not user or not user.get("is_active", True):
            raise NotAuthenticatedError("Not authorized, token failed")
        return Actor(
            user_id=str(user["_id"]),
            is_admin=bool(user.get("is_admin")) or self._is_admin_key(admin_key),
            email=user.get("email"),
            name=user.get("name"),
        )

    @staticmethod
    def require_admin(actor: Actor) -> Actor:
        if not actor.is_admin:
            raise NotAuthorizedError("Admin access required")
        return actor

    def _session(self, user_id: str, name: Optional[str]) -> Dict[str, Any]:
        return {"token": self.issue_token(user_id), "user_id": user_id, "name": name}

    def register(self, name: str, email: str, password: str, phone: Optional[str] = None) -> Dict[str, Any]:
        if self._users.find_one({"email": email}):
            raise DuplicateError("Email already registered")
        user = User(name=name, email=email, password_hash=hash_password(password), phone=phone).model_dump()
        user.update({"created_at": self._clock(), "updated_at": self._clock()})
        try:
            res = self._users.insert_one(user)
        except DuplicateKeyError:
            raise DuplicateError("Email already registered")
        return self._session(str(res.inserted_id), name)

    def login(self, email: str, password: str) -> Dict[str, Any]:
        user = self._users.find_one({"email": email})
        if not user or not check_password(password, user.get("password_hash")):
            raise NotAuthenticatedError("Invalid credentials")
        return self._session(str(user["_id"]), user.get("name"))
