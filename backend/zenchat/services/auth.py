"""Signup, login, logout and refresh orchestration."""
from dataclasses import dataclass
import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from zenchat.config import Settings
from zenchat.errors import (
    ChatError,
    DuplicateIdentityError,
    InternalError,
    InvalidCredentialsError,
    MissingCredentialsError,
)
from zenchat.models.user import RoleCode, User
from zenchat.schemas.auth import PublicUser, TokenPair
from zenchat.services.hashing import CredentialHasher
from zenchat.services.tokens import TokenService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientInfo:
    """Best-effort request metadata recorded on refresh sessions."""

    user_agent: str | None = None
    ip_address: str | None = None


def to_public_user(user: User) -> PublicUser:
    return PublicUser(
        id=user.id,
        username=user.username,
        email=user.email,
        avatar_url=user.avatar_url,
        role=user.role,
        created_at=user.created_at,
    )


def avatar_for_index(index: int, pool_size: int, base_url: str) -> str:
    """Pick an avatar cyclically from the fixed pool, zero-padded (avatar01..)."""
    number = index % pool_size + 1
    return f"{base_url.rstrip('/')}/avatar{number:02d}.avif"


class AuthSessionService:
    """Orchestrates credential checks and token issuance.

    Every method takes the request's datastore session and commits it.
    """

    def __init__(self, hasher: CredentialHasher, tokens: TokenService, settings: Settings) -> None:
        self.hasher = hasher
        self.tokens = tokens
        self.settings = settings
        # Verified against when the identifier matches no account so both
        # failure paths cost one bcrypt check.
        self._dummy_digest = hasher.hash("zenchat-timing-equaliser")

    def sign_up(
        self,
        db: Session,
        username: str,
        email: str,
        password: str,
        client: ClientInfo = ClientInfo(),
    ) -> tuple[PublicUser, TokenPair]:
        email = email.strip().lower()
        username = username.strip()

        # check if email already exists
        if db.query(User).filter(User.email == email).first():
            raise DuplicateIdentityError("Email already exists")

        # check if username already exists
        if db.query(User).filter(User.username == username).first():
            raise DuplicateIdentityError("Username already exists")

        user_count = db.query(func.count(User.id)).scalar() or 0
        user = User(
            username=username,
            email=email,
            password_hash=self.hasher.hash(password),
            avatar_url=avatar_for_index(
                user_count, self.settings.avatar_pool_size, self.settings.avatar_base_url
            ),
            role=RoleCode.USER.value,
        )

        try:
            db.add(user)
            db.flush()
            tokens = self.tokens.issue(
                db, user, user_agent=client.user_agent, ip_address=client.ip_address
            )
            db.commit()
        except IntegrityError as exc:
            # Lost a race with a concurrent signup for the same identity.
            db.rollback()
            raise DuplicateIdentityError("Email or username already exists") from exc
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Signup failed to persist user")
            raise InternalError("Could not create user") from exc

        logger.info("User %s signed up", user.id)
        return to_public_user(user), tokens

    def login(
        self,
        db: Session,
        identifier: str | None,
        password: str | None,
        client: ClientInfo = ClientInfo(),
    ) -> tuple[PublicUser, TokenPair]:
        if not identifier or not password:
            raise MissingCredentialsError()

        lookup = identifier.strip()
        if "@" in lookup:
            user = db.query(User).filter(User.email == lookup.lower()).first()
        else:
            user = db.query(User).filter(User.username == lookup).first()

        digest = user.password_hash if user is not None else self._dummy_digest
        matched = self.hasher.verify(password, digest)
        if user is None or not matched:
            logger.info("Failed login attempt")
            raise InvalidCredentialsError()

        try:
            tokens = self.tokens.issue(
                db, user, user_agent=client.user_agent, ip_address=client.ip_address
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Login failed to persist refresh session")
            raise InternalError("Could not create session") from exc

        logger.info("User %s logged in", user.id)
        return to_public_user(user), tokens

    def refresh(self, db: Session, refresh_token: str | None, client: ClientInfo = ClientInfo()) -> TokenPair:
        if not refresh_token:
            raise MissingCredentialsError("Missing refresh token")
        try:
            tokens = self.tokens.rotate_refresh(
                db, refresh_token, user_agent=client.user_agent, ip_address=client.ip_address
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Refresh failed to persist rotation")
            raise InternalError("Could not refresh session") from exc
        return tokens

    def logout(self, db: Session, refresh_token: str | None) -> bool:
        """Revoke the presented refresh lineage, if any.

        Idempotent: an absent, expired, already revoked or unreadable token is
        not an error. Returns whether any refresh session was revoked.
        """
        if not refresh_token:
            return False
        try:
            revoked = self.tokens.revoke(db, refresh_token)
            db.commit()
        except ChatError as exc:
            logger.debug("Logout with unusable refresh token: %s", exc.kind)
            return False
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Logout failed to revoke refresh lineage")
            raise InternalError("Could not revoke session") from exc
        return revoked > 0
