"""Access/refresh token issuance, verification and rotation.

Access tokens are stateless signed JWTs. Refresh tokens are signed JWTs whose
identifier (``jti``) is also recorded as a ``RefreshSession`` row. Rows that
descend from the same login share a ``lineage_id``; presenting a refresh token
that was already rotated or revoked revokes its whole lineage.
"""
from datetime import datetime, timedelta, timezone
import hashlib
import logging
import uuid

from jose import ExpiredSignatureError, JWTError, jwt
from jose.exceptions import JWTClaimsError
from sqlalchemy.orm import Session

from zenchat.config import Settings
from zenchat.errors import (
    AuthFailureError,
    ExpiredTokenError,
    InvalidSignatureError,
    MalformedTokenError,
    TokenReusedError,
)
from zenchat.models.auth import RefreshSession
from zenchat.models.user import User
from zenchat.schemas.auth import AccessClaims, TokenPair

logger = logging.getLogger(__name__)

ACCESS = "access"
REFRESH = "refresh"


def hash_token_id(token_id: str) -> str:
    """Hash refresh token identifier before persisting."""
    return hashlib.sha256(token_id.encode("utf-8")).hexdigest()


class TokenService:
    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
    ) -> None:
        self._secret_key = secret_key
        self.algorithm = algorithm
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenService":
        return cls(
            secret_key=settings.secret_key,
            algorithm=settings.algorithm,
            access_ttl=timedelta(minutes=settings.access_token_expire_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_expire_days),
        )

    def issue(
        self,
        db: Session,
        user: User,
        *,
        lineage_id: str | None = None,
        rotated_from_id: str | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> TokenPair:
        """Create a token pair and record the refresh token in its lineage.

        A new lineage is started unless ``lineage_id`` is given. The caller
        owns the transaction and must commit.
        """
        now = datetime.now(timezone.utc)
        access_expires_at = now + self.access_ttl
        refresh_expires_at = now + self.refresh_ttl
        jti = str(uuid.uuid4())
        lineage_id = lineage_id or str(uuid.uuid4())

        access_token = jwt.encode(
            {
                "sub": user.id,
                "role": user.role,
                "type": ACCESS,
                "iat": int(now.timestamp()),
                "exp": access_expires_at,
            },
            self._secret_key,
            algorithm=self.algorithm,
        )
        refresh_token = jwt.encode(
            {
                "sub": user.id,
                "jti": jti,
                "lid": lineage_id,
                "type": REFRESH,
                "iat": int(now.timestamp()),
                "exp": refresh_expires_at,
            },
            self._secret_key,
            algorithm=self.algorithm,
        )

        db.add(
            RefreshSession(
                user_id=user.id,
                lineage_id=lineage_id,
                jti_hash=hash_token_id(jti),
                expires_at=refresh_expires_at.replace(tzinfo=None).isoformat(),
                rotated_from_id=rotated_from_id,
                user_agent=user_agent,
                ip_address=ip_address,
            )
        )
        db.flush()

        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
        )

    def verify_access(self, token: str) -> AccessClaims:
        """Verify an access token and return its claims. Stateless."""
        payload = self._decode(token, expected_type=ACCESS)
        role = payload.get("role")
        if not isinstance(role, str):
            raise MalformedTokenError("Token is missing required claims")
        return AccessClaims(
            user_id=payload["sub"],
            role=role,
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def rotate_refresh(
        self,
        db: Session,
        refresh_token: str,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> TokenPair:
        """Consume a refresh token and issue its successor in the same lineage.

        Presenting a token that was already consumed or revoked revokes the
        entire lineage (committed before ``TokenReusedError`` is raised).
        """
        payload = self._decode(refresh_token, expected_type=REFRESH)
        jti, lineage_id = payload.get("jti"), payload.get("lid")
        if not isinstance(jti, str) or not isinstance(lineage_id, str):
            raise MalformedTokenError("Token is missing required claims")

        session = db.query(RefreshSession).filter(
            RefreshSession.jti_hash == hash_token_id(jti),
        ).first()

        now = datetime.utcnow().isoformat()
        consumed = 0
        if session is not None and session.lineage_id == lineage_id:
            # Compare-and-set so two concurrent rotations cannot both succeed.
            consumed = db.query(RefreshSession).filter(
                RefreshSession.id == session.id,
                RefreshSession.consumed_at.is_(None),
                RefreshSession.revoked_at.is_(None),
            ).update({"consumed_at": now}, synchronize_session=False)

        if not consumed:
            revoked = self.revoke_lineage(db, lineage_id)
            db.commit()
            logger.warning(
                "Refresh token reuse detected for user %s; revoked %d session(s) in lineage %s",
                payload["sub"],
                revoked,
                lineage_id,
            )
            raise TokenReusedError()

        user = db.query(User).filter(User.id == session.user_id).first()
        if user is None:
            raise AuthFailureError("Account no longer exists")

        return self.issue(
            db,
            user,
            lineage_id=lineage_id,
            rotated_from_id=session.id,
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def revoke(self, db: Session, refresh_token: str) -> int:
        """Revoke the lineage a refresh token belongs to, even if it expired.

        Returns the number of rows revoked. The caller must commit.
        """
        payload = self._decode(refresh_token, expected_type=REFRESH, verify_exp=False)
        lineage_id = payload.get("lid")
        if not isinstance(lineage_id, str):
            raise MalformedTokenError("Token is missing required claims")
        return self.revoke_lineage(db, lineage_id)

    def revoke_lineage(self, db: Session, lineage_id: str) -> int:
        now = datetime.utcnow().isoformat()
        return db.query(RefreshSession).filter(
            RefreshSession.lineage_id == lineage_id,
            RefreshSession.revoked_at.is_(None),
        ).update({"revoked_at": now}, synchronize_session=False)

    def _decode(self, token: str, *, expected_type: str, verify_exp: bool = True) -> dict:
        if not token or not isinstance(token, str):
            raise MalformedTokenError()
        try:
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise MalformedTokenError() from exc

        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self.algorithm],
                options={"verify_exp": verify_exp},
            )
        except ExpiredSignatureError as exc:
            raise ExpiredTokenError() from exc
        except JWTClaimsError as exc:
            raise MalformedTokenError() from exc
        except JWTError as exc:
            raise InvalidSignatureError() from exc

        if payload.get("type") != expected_type:
            raise MalformedTokenError("Invalid token type")
        if not isinstance(payload.get("sub"), str) or not isinstance(payload.get("iat"), int):
            raise MalformedTokenError("Token is missing required claims")
        if not isinstance(payload.get("exp"), int):
            raise MalformedTokenError("Token is missing required claims")
        return payload
