import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import firebase_admin
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials
from pymongo.database import Database

from database import USERS, get_db

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)


@dataclass
class Identity:
    email: str
    uid: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)


class FirebaseIdentityProvider:
    """Verifies Firebase ID tokens with the Admin SDK."""

    def __init__(self, credentials_path: str):
        try:
            self.app = firebase_admin.get_app()
        except ValueError:
            self.app = firebase_admin.initialize_app(credentials.Certificate(credentials_path))

    def verify(self, token: str) -> Dict[str, Any]:
        return firebase_auth.verify_id_token(token, app=self.app)


def get_identity_provider(request: Request):
    return request.app.state.identity_provider


def unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_identity(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    provider=Depends(get_identity_provider),
) -> Identity:
    if not creds or not creds.credentials:
        raise unauthorized("unauthorized access")
    try:
        decoded = provider.verify(creds.credentials)
    except Exception as e:
        logger.warning("Token verification failed: %s", e)
        raise unauthorized("invalid token")
    email = decoded.get("email")
    if not email:
        raise unauthorized("invalid token")
    return Identity(email=email, uid=decoded.get("uid"), claims=decoded)


def ensure_owner(email: Optional[str], identity: Identity) -> None:
    if email != identity.email:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden access")


def is_admin(db: Database, identity: Identity) -> bool:
    user = db[USERS].find_one({"email": identity.email})
    return bool(user) and user.get("role") == "admin"


def require_admin(
    identity: Identity = Depends(get_current_identity),
    db: Database = Depends(get_db),
) -> Identity:
    if not is_admin(db, identity):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden access")
    return identity
