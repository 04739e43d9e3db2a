"""Process-wide service graph.

Built once per application by ``build_app_state`` and stored on
``app.state.services``; handlers reach it through ``zenchat.api.deps``.
"""
from dataclasses import dataclass

from sqlalchemy.orm import sessionmaker

from zenchat.config import Settings
from zenchat.realtime.registry import SessionRegistry
from zenchat.realtime.router import ConversationRouter
from zenchat.services.auth import AuthSessionService
from zenchat.services.hashing import CredentialHasher
from zenchat.services.rate_limit import RateLimiter
from zenchat.services.tokens import TokenService


@dataclass
class AppState:
    settings: Settings
    session_factory: sessionmaker
    hasher: CredentialHasher
    tokens: TokenService
    auth: AuthSessionService
    limiter: RateLimiter
    registry: SessionRegistry
    router: ConversationRouter


def build_app_state(settings: Settings, session_factory: sessionmaker) -> AppState:
    hasher = CredentialHasher(rounds=settings.bcrypt_rounds)
    tokens = TokenService.from_settings(settings)
    registry = SessionRegistry(tokens, outbox_size=settings.session_outbox_size)
    router = ConversationRouter(
        registry,
        session_factory,
        datastore_timeout=settings.datastore_timeout_seconds,
    )
    router.attach()
    return AppState(
        settings=settings,
        session_factory=session_factory,
        hasher=hasher,
        tokens=tokens,
        auth=AuthSessionService(hasher, tokens, settings),
        limiter=RateLimiter.from_settings(settings),
        registry=registry,
        router=router,
    )
