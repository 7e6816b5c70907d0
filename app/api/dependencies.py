"""
FastAPI Dependencies - Caller authentication and authorization.

Callers present a JWT minted by the external identity provider. Consumers
carry only a subject; merchant scanner sessions also carry a merchant_id
claim; housekeeping requires the admin role.

NO DICTIONARIES - All dependencies return typed objects.
"""

from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from structlog import get_logger

from app.config import settings
from app.exceptions import AuthenticationError, AuthorizationError

logger = get_logger(__name__)

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class CallerIdentity:
    """Authenticated caller identity from the bearer token."""

    user_id: str
    merchant_id: UUID | None = None
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


@dataclass(frozen=True)
class MerchantIdentity:
    """Caller authenticated as a merchant scanner session."""

    user_id: str
    merchant_id: UUID


# Bearer token scheme for JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


def decode_caller_token(token: str) -> CallerIdentity:
    """
    Verify a caller JWT and extract the identity claims.

    Raises:
        AuthenticationError: Signature, expiry, audience or claims invalid
    """
    options: dict[str, Any] = {"require": ["sub"]}
    if settings.auth_jwt_audience is None:
        options["verify_aud"] = False

    try:
        payload = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[settings.auth_jwt_algorithm],
            audience=settings.auth_jwt_audience,
            issuer=settings.auth_jwt_issuer,
            options=options,
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError(str(exc)) from exc

    user_id = payload.get("sub")
    if not isinstance(user_id, str) or not user_id:
        raise AuthenticationError("missing subject")

    merchant_id = None
    raw_merchant = payload.get("merchant_id")
    if raw_merchant is not None:
        try:
            merchant_id = UUID(str(raw_merchant))
        except ValueError as exc:
            raise AuthenticationError("malformed merchant_id claim") from exc

    roles = payload.get("roles") or []
    if not isinstance(roles, list):
        raise AuthenticationError("roles claim must be a list")

    return CallerIdentity(
        user_id=user_id,
        merchant_id=merchant_id,
        roles=frozenset(str(role) for role in roles),
    )


async def get_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CallerIdentity:
    """
    FastAPI dependency that authenticates the caller.

    Accepts: Authorization: Bearer {jwt}

    Usage:
        @router.get("/v1/redemptions/quota")
        async def get_quota(caller: CallerIdentity = Depends(get_caller)):
            ...

    Raises:
        HTTPException 401 if no token or invalid token
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        caller = decode_caller_token(credentials.credentials)
    except AuthenticationError as exc:
        logger.warning("caller_auth_failed", error=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    return caller


async def require_merchant(caller: CallerIdentity = Depends(get_caller)) -> MerchantIdentity:
    """
    Require a merchant scanner session.

    Raises:
        HTTPException(403): If the token carries no merchant_id
    """
    if caller.merchant_id is None:
        logger.warning("caller_not_merchant", user_id=caller.user_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(AuthorizationError("merchant")),
        )
    return MerchantIdentity(user_id=caller.user_id, merchant_id=caller.merchant_id)


async def require_admin(caller: CallerIdentity = Depends(get_caller)) -> CallerIdentity:
    """
    Require admin role.

    Raises:
        HTTPException(403): If the caller is not an admin
    """
    if not caller.is_admin:
        logger.warning(
            "caller_insufficient_role", user_id=caller.user_id, roles=sorted(caller.roles)
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(AuthorizationError(ADMIN_ROLE)),
        )
    return caller
