"""JWT signing and verification for the jwtGenerate and authMiddleware nodes."""

import re
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any, Union

from jose import jwt, JWTError

from core.config import Settings
from core.logging import get_logger
from services.errors import ConfigurationError, HandlerError

logger = get_logger(__name__)

TTL_PATTERN = re.compile(r'^\s*(\d+)\s*([smhdw]?)\s*$')
TTL_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}
SUPPORTED_ALGORITHMS = ("HS256", "HS384", "HS512")


def parse_ttl(value: Union[str, int, float]) -> int:
    """Parse a token lifetime such as "30s", "15m", "12h", "7d" or 3600 into seconds."""
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid token lifetime: {value!r}")
    if isinstance(value, (int, float)):
        if value <= 0:
            raise ConfigurationError(f"Token lifetime must be positive: {value!r}")
        return int(value)

    match = TTL_PATTERN.match(str(value))
    if not match:
        raise ConfigurationError(f"Invalid token lifetime: {value!r}")
    seconds = int(match.group(1)) * TTL_UNITS[match.group(2)]
    if seconds <= 0:
        raise ConfigurationError(f"Token lifetime must be positive: {value!r}")
    return seconds


class TokenSigner:
    """Signs and verifies HMAC JWTs with the configured secret."""

    def __init__(self, secret: Optional[str], algorithm: str = "HS256",
                 default_expires: Union[str, int] = "7d"):
        self._secret = secret
        self._algorithm = algorithm
        self._default_expires = default_expires

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenSigner":
        return cls(settings.jwt_secret_key, settings.jwt_algorithm, settings.jwt_default_expires)

    def _require_secret(self) -> str:
        if not self._secret:
            raise ConfigurationError("JWT secret is not configured (set JWT_SECRET_KEY)")
        return self._secret

    def sign(self, payload: Dict[str, Any], ttl: Optional[Union[str, int]] = None,
             algorithm: Optional[str] = None) -> str:
        """Create a token for payload, expiring after ttl (default from settings)."""
        secret = self._require_secret()
        algorithm = algorithm or self._algorithm
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ConfigurationError(f"Unsupported JWT algorithm: {algorithm}")
        if not isinstance(payload, dict):
            raise HandlerError(f"JWT payload must be an object, got {type(payload).__name__}")

        now = datetime.now(timezone.utc)
        claims = dict(payload)
        claims["iat"] = now
        claims["exp"] = now + timedelta(seconds=parse_ttl(ttl if ttl is not None else self._default_expires))
        return jwt.encode(claims, secret, algorithm=algorithm)

    def verify(self, token: str) -> Dict[str, Any]:
        """Verify a token and return its claims.

        Raises:
            HandlerError: When the token is invalid or expired.
        """
        secret = self._require_secret()
        try:
            return jwt.decode(token, secret, algorithms=list(SUPPORTED_ALGORITHMS))
        except JWTError as e:
            logger.debug("Token verification failed", error=str(e))
            raise HandlerError(f"Invalid or expired token: {e}") from e
