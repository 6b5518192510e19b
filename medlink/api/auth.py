"""Bearer token handling for the federation API.

Tokens are HS256 JWTs carrying the caller's identity:

    sub          user id
    role         patient | doctor | hospital_admin | central_admin
    ic           caller's own IC number (patients)
    hospital_id  hospital the caller works at (staff)

Tokens are issued by the hospital portals; ``create_access_token`` exists for
the CLI and tests.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi.security import HTTPBearer
from jose import JWTError, jwt

from medlink.domain.enums import Role
from medlink.domain.models import CallerContext
from medlink.infrastructure.config_manager import AuthConfig

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


class InvalidTokenError(Exception):
    """Raised when a bearer token is malformed, expired or carries bad claims."""


def create_access_token(
    auth_config: AuthConfig,
    user_id: str,
    role: Role,
    ic_number: Optional[str] = None,
    hospital_id: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a signed access token.

    Parameters:
        auth_config: Secret, algorithm and default expiry
        user_id: Subject of the token
        role: Caller role
        ic_number: Caller's own IC number (patients)
        hospital_id: Caller's home hospital (staff)
        expires_delta: Lifetime override

    Returns:
        Encoded JWT
    """
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=auth_config.access_token_expire_minutes)
    )
    to_encode: Dict[str, Any] = {"sub": user_id, "role": Role(role).value, "exp": expire}
    if ic_number:
        to_encode["ic"] = ic_number
    if hospital_id:
        to_encode["hospital_id"] = hospital_id

    return jwt.encode(
        to_encode,
        auth_config.jwt_secret.get_secret_value(),
        algorithm=auth_config.jwt_algorithm,
    )


def decode_access_token(token: str, auth_config: AuthConfig) -> Dict[str, Any]:
    """Verify a token's signature and expiry and return its claims.

    Raises:
        InvalidTokenError: If the token cannot be verified
    """
    try:
        return jwt.decode(
            token,
            auth_config.jwt_secret.get_secret_value(),
            algorithms=[auth_config.jwt_algorithm],
        )
    except JWTError as e:
        raise InvalidTokenError(str(e)) from e


def caller_from_token(token: str, auth_config: AuthConfig, ip_address: str = "unknown") -> CallerContext:
    """Build the caller context for a bearer token.

    Raises:
        InvalidTokenError: If the token is invalid or its claims are incomplete
    """
    claims = decode_access_token(token, auth_config)

    user_id = claims.get("sub")
    if not user_id:
        raise InvalidTokenError("Token has no subject")

    try:
        role = Role(claims.get("role"))
    except ValueError:
        raise InvalidTokenError(f"Unknown role: {claims.get('role')}")

    return CallerContext(
        user_id=user_id,
        role=role,
        ic_number=claims.get("ic"),
        home_hospital_id=claims.get("hospital_id"),
        ip_address=ip_address,
    )
