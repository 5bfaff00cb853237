"""
Bearer-token authentication and role checks.

Tokens are Firebase ID tokens. They are verified on every request against the
Identity Toolkit REST API; nothing about a session is kept locally.
"""
import logging
import os
from typing import Optional

import requests
from fastapi import Depends, Header
from pydantic import BaseModel
from pymongo.database import Database

from database import get_db
from errors import Forbidden, Internal, Unauthenticated

logger = logging.getLogger(__name__)

FIREBASE_API_KEY = os.getenv("FIREBASE_API_KEY")
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))
LOOKUP_URL = "https://identitytoolkit.googleapis.com/v1/accounts:lookup"
# accounts:lookup error codes that mean the token itself is bad or expired
TOKEN_ERRORS = {
    "INVALID_ID_TOKEN", "TOKEN_EXPIRED", "USER_NOT_FOUND", "USER_DISABLED", "CREDENTIAL_TOO_OLD_LOGIN_AGAIN",
}


class Identity(BaseModel):
    uid: str
    email: str


class TokenRejected(Exception):
    """Raised by a verifier when the token is expired, invalid or malformed."""


class FirebaseTokenVerifier:
    def __init__(self, api_key: Optional[str] = None, timeout: float = HTTP_TIMEOUT_SECONDS):
        self.api_key = api_key or FIREBASE_API_KEY
        self.timeout = timeout

    def verify(self, token: str) -> Identity:
        if not self.api_key:
            raise Internal("FIREBASE_API_KEY is not configured")
        try:
            resp = requests.post(
                LOOKUP_URL,
                params={"key": self.api_key},
                json={"idToken": token},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.exception("Identity provider unreachable")
            raise Internal("Identity provider unavailable") from e
        if resp.status_code >= 500:
            raise Internal(f"Identity provider error ({resp.status_code})")
        if resp.status_code != 200:
            message = _error_message(resp)
            if message.split(" ")[0] not in TOKEN_ERRORS:
                # bad API key or project setup, not a bad token
                logger.error("Identity provider refused the request: %s", message)
                raise Internal("Identity provider rejected the server credentials")
            raise TokenRejected(message)
        users = resp.json().get("users") or []
        if not users or not users[0].get("email"):
            raise TokenRejected("Token carries no email claim")
        return Identity(uid=users[0].get("localId", ""), email=users[0]["email"])


def _error_message(resp) -> str:
    try:
        return str((resp.json().get("error") or {}).get("message") or "")
    except ValueError:
        return resp.text[:200]


_verifier = FirebaseTokenVerifier()


def get_verifier():
    return _verifier


def authenticate(authorization: Optional[str], verifier) -> Identity:
    if not authorization:
        raise Unauthenticated("Unauthorized access")
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        raise Unauthenticated("Unauthorized access")
    try:
        identity = verifier.verify(parts[1])
    except TokenRejected as e:
        logger.info("Token rejected: %s", e)
        raise Forbidden("Forbidden access")
    return identity


def authorize(database: Database, identity: Identity, required_role: str = "user") -> dict:
    """Check the stored User behind an identity; returns the user document (empty for unknown users)."""
    user = database["user"].find_one({"email": identity.email}) or {}
    if user.get("is_banned"):
        raise Forbidden("User is banned")
    if required_role == "admin" and (not user or user.get("role") != "admin"):
        raise Forbidden("Admin access required")
    return user


def is_admin(database: Database, identity: Identity) -> bool:
    user = database["user"].find_one({"email": identity.email}, {"role": 1})
    return bool(user and user.get("role") == "admin")


def require_self_or_admin(database: Database, identity: Identity, email: str) -> None:
    if identity.email.lower() != (email or "").lower() and not is_admin(database, identity):
        raise Forbidden("Forbidden access")


# ----- FastAPI dependencies -----

def current_identity(authorization: Optional[str] = Header(None), verifier=Depends(get_verifier)) -> Identity:
    return authenticate(authorization, verifier)


def require_user(identity: Identity = Depends(current_identity), database: Database = Depends(get_db)) -> Identity:
    authorize(database, identity, "user")
    return identity


def require_admin(identity: Identity = Depends(current_identity), database: Database = Depends(get_db)) -> Identity:
    authorize(database, identity, "admin")
    return identity
