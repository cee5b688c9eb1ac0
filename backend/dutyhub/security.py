"""Password hashing and token issuing collaborators.

Hashing uses passlib's `CryptContext` (pbkdf2_sha256). Every user also
gets a random per-user salt stored next to the hash and mixed into the
secret before hashing, so the stored pair is `(hash, salt)`.

Tokens are HS256 JWTs signed with PyJWT. `generate_token` returns `None`
instead of raising when signing fails, leaving the caller to turn that
into a failed result.
"""

import logging
import secrets
from datetime import timedelta
from typing import Optional, Tuple

import jwt
from passlib.context import CryptContext

from .config import Settings, settings as default_settings
from .schemas import AccessToken
from .utils.clock import utcnow

logger = logging.getLogger(__name__)

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class PasswordHasher:
    def __init__(self, context: CryptContext = PWD_CTX):
        self.context = context

    def create_hash(self, password: str) -> Tuple[str, str]:
        """Return `(hash, salt)` for `password`."""
        salt = secrets.token_hex(16)
        return self.context.hash(salt + password), salt

    def verify(self, password: str, password_hash: str, salt: str) -> bool:
        if not password_hash or salt is None:
            return False
        try:
            return self.context.verify(salt + password, password_hash)
        except ValueError:
            # unknown or malformed hash format
            return False


class TokenHandler:
    """Issue and decode signed access/refresh tokens."""

    def __init__(self, config: Settings = default_settings):
        self.secret = config.JWT_SECRET
        self.algorithm = config.JWT_ALGORITHM
        self.access_ttl = timedelta(hours=config.JWT_EXPIRE_HOURS)
        self.refresh_ttl = timedelta(hours=config.JWT_REFRESH_EXPIRE_HOURS)

    def generate_token(self, user_id, username: str, email: str, role: str,
                       is_refresh: bool = False) -> Optional[AccessToken]:
        expiration = utcnow() + (self.refresh_ttl if is_refresh else self.access_ttl)
        payload = {
            "user_id": str(user_id),
            "username": username,
            "email": email,
            "role": role,
            "typ": "refresh" if is_refresh else "access",
            # unique per issued token
            "jti": secrets.token_hex(8),
            "exp": int(expiration.timestamp()),
        }
        try:
            token = jwt.encode(payload, self.secret, algorithm=self.algorithm)
        except (jwt.PyJWTError, TypeError, ValueError, NotImplementedError):
            logger.exception("token_generation_failed")
            return None
        return AccessToken(token=token, expiration=expiration, is_refresh=is_refresh)

    def decode_token(self, token: str) -> dict:
        """Decode and verify `token`; raises `jwt.PyJWTError` when invalid."""
        return jwt.decode(token, self.secret, algorithms=[self.algorithm])
