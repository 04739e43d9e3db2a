"""Authentication API endpoints."""
from fastapi import APIRouter, Body, Depends, Request, Response, status
from sqlalchemy.orm import Session

from zenchat.api.deps import get_current_user, get_db, get_request_ip, get_services
from zenchat.config import Settings
from zenchat.models.user import User
from zenchat.schemas.auth import (
    AuthResponse,
    MessageResponse,
    PublicUser,
    TokenPair,
    TokenRefresh,
    UserLogin,
    UserRegister,
)
from zenchat.services.auth import ClientInfo, to_public_user
from zenchat.state import AppState

router = APIRouter(prefix="/auth", tags=["auth"])


def _cookie_options(settings: Settings) -> dict:
    return {
        "httponly": True,
        "secure": settings.cookie_secure,
        "samesite": settings.cookie_samesite,
        "path": "/",
    }


def set_session_cookies(response: Response, tokens: TokenPair, settings: Settings) -> None:
    """Issue HttpOnly access/refresh cookies (secure in production)."""
    options = _cookie_options(settings)
    response.set_cookie(
        key=settings.access_cookie_name,
        value=tokens.access_token,
        max_age=settings.access_token_expire_minutes * 60,
        **options,
    )
    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=tokens.refresh_token,
        max_age=settings.refresh_token_expire_days * 24 * 60 * 60,
        **options,
    )


def clear_session_cookies(response: Response, settings: Settings) -> None:
    options = _cookie_options(settings)
    response.delete_cookie(key=settings.access_cookie_name, **options)
    response.delete_cookie(key=settings.refresh_cookie_name, **options)


def client_info(request: Request) -> ClientInfo:
    user_agent = request.headers.get("user-agent")
    return ClientInfo(
        user_agent=user_agent[:255] if user_agent else None,
        ip_address=get_request_ip(request)[:45],
    )


@router.post("/signup", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
def signup(
    user_data: UserRegister,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    services: AppState = Depends(get_services),
):
    """Register a new user and start a session."""
    user, tokens = services.auth.sign_up(
        db,
        user_data.username,
        user_data.email,
        user_data.password,
        client=client_info(request),
    )
    set_session_cookies(response, tokens, services.settings)
    return AuthResponse(message="Signup successful", user=user, tokens=tokens)


@router.post("/login", response_model=AuthResponse)
def login(
    user_data: UserLogin,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    services: AppState = Depends(get_services),
):
    """Login with email or username and get tokens."""
    user, tokens = services.auth.login(
        db,
        user_data.identifier,
        user_data.password,
        client=client_info(request),
    )
    set_session_cookies(response, tokens, services.settings)
    return AuthResponse(message="Login successful", user=user, tokens=tokens)


@router.post("/refresh", response_model=TokenPair)
def refresh_tokens(
    request: Request,
    response: Response,
    payload: TokenRefresh | None = Body(default=None),
    db: Session = Depends(get_db),
    services: AppState = Depends(get_services),
):
    """Rotate the refresh token from the body or the refresh cookie."""
    refresh_token = (payload.refresh_token if payload else None) or request.cookies.get(
        services.settings.refresh_cookie_name
    )
    tokens = services.auth.refresh(db, refresh_token, client=client_info(request))
    set_session_cookies(response, tokens, services.settings)
    return tokens


@router.post("/logout", response_model=MessageResponse)
def logout(
    request: Request,
    response: Response,
    payload: TokenRefresh | None = Body(default=None),
    db: Session = Depends(get_db),
    services: AppState = Depends(get_services),
):
    """Clear session cookies and revoke the presented refresh lineage."""
    refresh_token = (payload.refresh_token if payload else None) or request.cookies.get(
        services.settings.refresh_cookie_name
    )
    services.auth.logout(db, refresh_token)
    clear_session_cookies(response, services.settings)
    return MessageResponse(message="Logout successful")


@router.get("/me", response_model=PublicUser)
def me(current_user: User = Depends(get_current_user)):
    """Return the authenticated user."""
    return to_public_user(current_user)
