"""HTTP Basic authentication against a hashed shared secret."""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from buildworker.errors import ConfigurationError

logger = logging.getLogger(__name__)


def _digest(secret: str) -> bytes:
    return hashlib.sha256(secret.encode("utf-8")).digest()


@dataclass(frozen=True, slots=True)
class ApiCredentials:
    username: str
    password_hash: bytes

    @classmethod
    def from_secret(cls, username: str, password: str) -> ApiCredentials:
        return cls(username=username, password_hash=_digest(password))

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ApiCredentials:
        env = os.environ if environ is None else environ
        username = env.get("BUILDSERVER_ID", "")
        password = env.get("BUILDSERVER_KEY", "")
        if not username or not password:
            raise ConfigurationError(
                "API credentials are not configured.",
                hint="Set BUILDSERVER_ID and BUILDSERVER_KEY.",
            )
        return cls.from_secret(username, password)

    def verify(self, username: str, password: str) -> bool:
        # Compare both parts so a wrong username costs the same as a wrong password.
        user_ok = hmac.compare_digest(username.encode("utf-8"), self.username.encode("utf-8"))
        password_ok = hmac.compare_digest(_digest(password), self.password_hash)
        return user_ok and password_ok


def basic_auth(credentials: ApiCredentials) -> Callable[[HTTPBasicCredentials], str]:
    security = HTTPBasic()

    def authenticate(supplied: HTTPBasicCredentials = Depends(security)) -> str:
        if not credentials.verify(supplied.username, supplied.password):
            logger.warning("wrong credentials: user=%s", supplied.username)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unauthorized",
                headers={"WWW-Authenticate": "Basic"},
            )
        return supplied.username

    return authenticate
