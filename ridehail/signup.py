import json
import secrets
from typing import Optional
import logging

from .config import settings

logger = logging.getLogger(__name__)


def _key(prefix: str, email: str) -> str:
    return f"{prefix}:{email.lower()}"


def generate_otp() -> str:
    return f"{secrets.randbelow(10**6):06d}"


class SignupStore:
    """Short-lived sign-up records keyed by email.

    The submitted profile and its one-time code sit together in one Redis hash
    with its own expiry, so any process can finish the verification and
    nothing depends on the connection that started it. Login codes use the
    same records under the ``login`` prefix.
    """

    def __init__(self, redis, ttl_sec: int | None = None, max_attempts: int | None = None, prefix: str = "signup"):
        self.redis = redis
        self.prefix = prefix
        self.ttl_sec = ttl_sec or settings.SIGNUP_TTL_SEC
        self.max_attempts = max_attempts or settings.OTP_MAX_ATTEMPTS

    async def stash(self, email: str, profile: dict) -> str:
        """Store `profile` under `email` with a fresh code, replacing any earlier attempt."""
        code = generate_otp()
        key = _key(self.prefix, email)
        await self.redis.delete(key)
        await self.redis.hset(key, mapping={
            "profile": json.dumps(profile),
            "otp": code,
            "attempts": 0,
        })
        await self.redis.expire(key, self.ttl_sec)
        logger.info("%s_stashed: email=%s ttl=%s", self.prefix, email, self.ttl_sec)
        return code

    async def verify(self, email: str, code: str) -> Optional[dict]:
        """Return the stashed profile if `code` matches, consuming the record.

        Wrong codes count against the record; once the attempt budget is spent
        the record is dropped and the sign-up has to start over.
        """
        key = _key(self.prefix, email)
        data = await self.redis.hgetall(key)
        if not data:
            return None
        if not secrets.compare_digest(data.get("otp", ""), code):
            attempts = await self.redis.hincrby(key, "attempts", 1)
            if attempts >= self.max_attempts:
                await self.redis.delete(key)
                logger.warning("%s_locked: email=%s attempts=%s", self.prefix, email, attempts)
            return None
        await self.redis.delete(key)
        logger.info("%s_verified: email=%s", self.prefix, email)
        return json.loads(data["profile"])
