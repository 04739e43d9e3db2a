"""Shared FastAPI dependencies."""
from collections.abc import Generator

from fastapi import Depends, Request
from sqlalchemy.orm import Session
from starlette.requests import HTTPConnection

from zenchat.errors import AuthFailureError
from zenchat.models.user import User
from zenchat.schemas.auth import AccessClaims
from zenchat.state import AppState


def get_services(request: HTTPConnection) -> AppState:
    return request.app.state.services


def get_db(services: AppState = Depends(get_services)) -> Generator[Session, None, None]:
    """Dependency that provides a database session."""
    db = services.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_request_ip(conn: HTTPConnection) -> str:
    """Client address used as the rate-limit key.

    Forwarded headers are not read here; uvicorn's ``proxy_headers`` resolves
    them into ``client`` only for trusted proxies.
    """
    if conn.client:
        return conn.client.host
    return "unknown"


def extract_access_token(conn: HTTPConnection, cookie_name: str) -> str | None:
    """Bearer header first, then the access cookie, then a ``token`` query parameter."""
    authorization = conn.headers.get("authorization")
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials:
            return credentials.strip()
    return conn.cookies.get(cookie_name) or conn.query_params.get("token")


def get_current_claims(request: Request, services: AppState = Depends(get_services)) -> AccessClaims:
    token = extract_access_token(request, services.settings.access_cookie_name)
    if not token:
        raise AuthFailureError("Access token required")
    return services.tokens.verify_access(token)


def get_current_user(
    claims: AccessClaims = Depends(get_current_claims),
    db: Session = Depends(get_db),
) -> User:
    user = db.query(User).filter(User.id == claims.user_id).first()
    if user is None:
        raise AuthFailureError("Account no longer exists")
    return user
