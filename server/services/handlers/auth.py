"""Auth node handlers - authMiddleware and jwtGenerate."""

from typing import Dict, Any, TYPE_CHECKING

from core.logging import get_logger
from services.errors import HandlerError
from services.execution.models import ExecutionContext

if TYPE_CHECKING:
    from services.tokens import TokenSigner

logger = get_logger(__name__)


async def handle_auth_middleware(fields: Dict[str, Any], context: ExecutionContext,
                                 signer: "TokenSigner") -> Dict[str, Any]:
    """Verify the bearer token from the invocation's Authorization header.

    Returns:
        The decoded token claims
    """
    auth = context.header("authorization") or ""
    scheme, _, token = auth.partition(" ")
    if scheme != "Bearer" or not token.strip():
        raise HandlerError("Missing or invalid Authorization header")

    claims = signer.verify(token.strip())
    logger.debug("Auth middleware completed", execution_id=context.execution_id,
                 user_id=claims.get("userId") or claims.get("id") or claims.get("sub"))
    return claims


async def handle_jwt_generate(fields: Dict[str, Any], context: ExecutionContext,
                              signer: "TokenSigner") -> str:
    """Sign the resolved payload.

    Parameters:
        payload: Claims object (templates already resolved)
        expiresIn: Lifetime such as "7d" or a number of seconds
        algorithm: HS256 (default), HS384 or HS512
    """
    payload = fields.get("payload") or {}
    expires_in = fields.get("expiresIn") or "7d"
    algorithm = fields.get("algorithm") or "HS256"

    token = signer.sign(payload, ttl=expires_in, algorithm=algorithm)
    logger.debug("JWT generated", execution_id=context.execution_id,
                 expires_in=expires_in, algorithm=algorithm)
    return token
