"""toolgate authentication: FastAPI dependency resolving a bearer token to an Identity."""

from fastapi import HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..control.types import Identity
from ..utils.config_loader import GatewayConfig, config_loader
from ..utils.logging_config import StructuredLogger
from .hashing import _MIN_TOKEN_HEX_LEN, hash_token

logger = StructuredLogger(__name__)
security = HTTPBearer()


def identity_for_token(token: str, config: GatewayConfig) -> Identity | None:
    """Look up a raw bearer token in the configured credentials table.

    Scoped credentials get the token digest as ``token_id`` so they carry
    their own quota in addition to the identity's.
    """
    token_sha = hash_token(token)
    cred = config.credentials.get(token_sha)
    if cred is None:
        return None
    return Identity(
        id=cred.identity_id,
        plan=cred.plan,
        token_id=token_sha if cred.scoped else None,
        is_admin=cred.is_admin,
        mission_token=cred.mission_token,
    )


def get_identity_from_token(credentials: HTTPAuthorizationCredentials = Security(security)) -> Identity:
    """Authenticate the caller and return its Identity.

    1. Reject short/weak tokens
    2. Hash token → lookup in the credentials table
    """
    token = credentials.credentials

    if len(token) < _MIN_TOKEN_HEX_LEN:
        logger.warning("Authentication failed: Token too short", length=len(token))
        raise HTTPException(status_code=401, detail="Invalid API token: insufficient entropy")

    identity = identity_for_token(token, config_loader.get())
    if identity is None:
        logger.warning("Authentication failed: Invalid token")
        raise HTTPException(status_code=401, detail="Invalid API token")
    return identity
