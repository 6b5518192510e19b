"""Dependency injection for the federation API.

This module provides dependency injection functions for FastAPI. The
federation (stores, registry and services) is built once from settings and
shared by every request; callers are resolved from the bearer token.
"""

import logging
from functools import lru_cache
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials

from medlink.api.auth import InvalidTokenError, bearer_scheme, caller_from_token
from medlink.api.security import get_client_ip
from medlink.domain.models import CallerContext
from medlink.infrastructure.settings import settings
from medlink.main import Federation

logger = logging.getLogger(__name__)


@lru_cache()
def get_federation() -> Federation:
    """Get the federation instance (cached).

    Built and initialized on first use so that importing the app never opens
    a database.

    Returns:
        Federation: Shared stores, registry and services

    Raises:
        ConfigurationError: If configuration is invalid
        StorageError: If the central schema cannot be created
    """
    federation = Federation.build(settings)
    federation.initialize()
    logger.info(f"Federation ready with {len(federation.registry)} hospitals")
    return federation


FederationDep = Annotated[Federation, Depends(get_federation)]


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_optional_caller(
    request: Request,
    federation: FederationDep,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[CallerContext]:
    """Caller for endpoints that also accept anonymous requests.

    A missing token yields None; a token that is present but invalid is
    still rejected with 401.
    """
    if credentials is None:
        return None
    try:
        return caller_from_token(credentials.credentials, federation.auth_config, get_client_ip(request))
    except InvalidTokenError as e:
        logger.warning(f"Rejected bearer token from {get_client_ip(request)}: {e}")
        raise _unauthorized("Could not validate credentials")


def get_current_caller(caller: Optional[CallerContext] = Depends(get_optional_caller)) -> CallerContext:
    """Authenticated caller; 401 when no bearer token was sent."""
    if caller is None:
        raise _unauthorized("Not authenticated")
    return caller


CallerDep = Annotated[CallerContext, Depends(get_current_caller)]
OptionalCallerDep = Annotated[Optional[CallerContext], Depends(get_optional_caller)]
