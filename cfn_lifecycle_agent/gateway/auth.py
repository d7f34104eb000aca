"""Bearer-token authentication for the gateway.

Tokens are HS256 JWTs signed with ``GATEWAY_JWT_SECRET``. A missing or invalid token is
not an error by itself: the request continues as anonymous and only protected routes
reject it.
"""

import logging
from dataclasses import dataclass

from fastapi import Request
from jose import JWTError, jwt

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


@dataclass(frozen=True)
class AuthContext:
    user_id: str | None = None
    email: str | None = None
    authenticated: bool = False

    def to_dict(self) -> dict:
        return {"userId": self.user_id, "email": self.email, "authenticated": self.authenticated}


ANONYMOUS = AuthContext()


class AuthenticationRequired(Exception):
    pass


def create_token(user_id: str, secret: str, email: str | None = None, expires_at: int | None = None) -> str:
    claims: dict = {"sub": user_id}
    if email:
        claims["email"] = email
    if expires_at is not None:
        claims["exp"] = expires_at
    return jwt.encode(claims, secret, algorithm=ALGORITHM)


def verify_token(token: str, secret: str) -> AuthContext:
    """Decode ``token``; raises ``JWTError`` when the signature, expiry or subject is bad."""
    claims = jwt.decode(token, secret, algorithms=[ALGORITHM])
    user_id = claims.get("sub")
    if not user_id:
        raise JWTError("Token has no subject")
    return AuthContext(user_id=str(user_id), email=claims.get("email"), authenticated=True)


def auth_context_from_header(authorization: str | None, secret: str | None) -> AuthContext:
    if not authorization or not secret:
        return ANONYMOUS
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return ANONYMOUS
    try:
        return verify_token(token.strip(), secret)
    except JWTError as e:
        logger.info("Rejected bearer token: %s", e)
        return ANONYMOUS


def get_auth(request: Request) -> AuthContext:
    """FastAPI dependency resolving the caller's identity."""
    secret = request.app.state.settings.jwt_secret
    return auth_context_from_header(request.headers.get("authorization"), secret)


def require_auth(request: Request) -> AuthContext:
    auth = get_auth(request)
    if not auth.authenticated:
        raise AuthenticationRequired()
    return auth
