"""One-way password hashing."""
import logging

import bcrypt
from starlette.concurrency import run_in_threadpool

from zenchat.errors import InvalidRequestError

logger = logging.getLogger(__name__)

# bcrypt only reads this many bytes of input
MAX_PASSWORD_BYTES = 72


class CredentialHasher:
    """bcrypt hashing with a fixed work factor.

    bcrypt is deliberately slow; async callers should use ``hash_async`` /
    ``verify_async`` so the event loop is not stalled.
    """

    def __init__(self, rounds: int = 10) -> None:
        self.rounds = rounds

    def hash(self, plaintext: str) -> str:
        """Hash a password.

        Raises:
            InvalidRequestError: If the UTF-8 encoded password exceeds 72 bytes.
        """
        encoded = plaintext.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            raise InvalidRequestError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
        return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plaintext: str, digest: str) -> bool:
        """Verify a password against its hash. Malformed digests fail closed."""
        try:
            return bcrypt.checkpw(
                plaintext.encode("utf-8"),
                digest.encode("utf-8"),
            )
        except (ValueError, TypeError, AttributeError):
            logger.warning("Password digest could not be parsed; rejecting")
            return False

    async def hash_async(self, plaintext: str) -> str:
        return await run_in_threadpool(self.hash, plaintext)

    async def verify_async(self, plaintext: str, digest: str) -> bool:
        return await run_in_threadpool(self.verify, plaintext, digest)
