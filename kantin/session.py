"""Client session state: the auth token and the signed-in user.

A store is created per request (or per script), initialised from whatever
was persisted, and cleared explicitly on logout.
"""
import base64
import binascii
import logging
from typing import Dict, Mapping, NamedTuple, Optional

import jwt
from pydantic import ValidationError as PydanticValidationError

from . import schemas
from .auth import decode_access_token

logger = logging.getLogger(__name__)

TOKEN_KEY = "auth_token"
USER_KEY = "auth_user"


class ClientSession(NamedTuple):
    user: schemas.UserRead
    token: str


class SessionStore:
    """Persists `auth_token` and `auth_user`; subclasses choose where."""

    def _read(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def _write(self, key: str, value: str) -> None:
        raise NotImplementedError

    def _delete(self, key: str) -> None:
        raise NotImplementedError

    def load(self, verify: bool = True) -> Optional[ClientSession]:
        token = self._read(TOKEN_KEY)
        raw_user = self._read(USER_KEY)
        if not token or not raw_user:
            return None
        try:
            user = schemas.UserRead.model_validate_json(raw_user)
        except PydanticValidationError:
            logger.warning("discarding unreadable persisted session")
            self.clear()
            return None
        if verify:
            try:
                claims = decode_access_token(token)
            except jwt.PyJWTError:
                self.clear()
                return None
            if claims.get("sub") != str(user.id):
                self.clear()
                return None
        return ClientSession(user=user, token=token)

    def save(self, auth: schemas.AuthResponse) -> ClientSession:
        self._write(TOKEN_KEY, auth.token)
        self._write(USER_KEY, auth.user.model_dump_json())
        return ClientSession(user=auth.user, token=auth.token)

    def clear(self) -> None:
        self._delete(TOKEN_KEY)
        self._delete(USER_KEY)


class MemorySessionStore(SessionStore):
    def __init__(self, data: Optional[Dict[str, str]] = None):
        self.data = dict(data or {})

    def _read(self, key):
        return self.data.get(key)

    def _write(self, key, value):
        self.data[key] = value

    def _delete(self, key):
        self.data.pop(key, None)


class CookieSessionStore(SessionStore):
    """Reads request cookies; writes are queued until `apply(response)`.

    Values are unpadded base64url so JSON survives cookie quoting.
    """

    def __init__(self, cookies: Mapping[str, str]):
        self.cookies = cookies
        self.pending: Dict[str, Optional[str]] = {}

    def _read(self, key):
        if key in self.pending:
            return self.pending[key]
        raw = self.cookies.get(key)
        if raw is None:
            return None
        try:
            padded = raw + "=" * (-len(raw) % 4)
            return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
        except (binascii.Error, UnicodeError):
            return None

    def _write(self, key, value):
        self.pending[key] = value

    def _delete(self, key):
        self.pending[key] = None

    def apply(self, response):
        for key, value in self.pending.items():
            if value is None:
                response.delete_cookie(key)
            else:
                encoded = base64.urlsafe_b64encode(value.encode("utf-8")).decode("ascii").rstrip("=")
                response.set_cookie(key, encoded, httponly=True, samesite="lax")
        return response
