"""
FastAPI Dependencies - Authentication and external providers.

NO DICTIONARIES - All dependencies return typed objects.
"""

from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from structlog import get_logger

from app.config import settings
from app.exceptions import AuthenticationError
from app.models.domain import AuthenticatedUser
from app.services.gemini_provider import GeminiProvider
from app.services.generation_provider import GenerationProvider
from app.services.payment_provider import PaymentProvider
from app.services.stripe_provider import StripeProvider

logger = get_logger(__name__)

# Bearer token scheme for Supabase access tokens
bearer_scheme = HTTPBearer(auto_error=False)

SUPABASE_JWT_ALGORITHMS = ["HS256"]


def verify_access_token(token: str) -> AuthenticatedUser:
    """
    Verify a Supabase access token and extract the user identity.

    Checks signature (HS256 with the project JWT secret), expiry and
    audience. The sub claim is the auth user id.

    Raises:
        AuthenticationError: Token invalid, expired or missing claims
    """
    if not settings.supabase_jwt_secret:
        raise AuthenticationError("SUPABASE_JWT_SECRET not configured")

    try:
        payload: dict[str, object] = jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=SUPABASE_JWT_ALGORITHMS,
            audience=settings.supabase_jwt_audience,
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise AuthenticationError("Token expired") from e
    except jwt.InvalidTokenError as e:
        raise AuthenticationError(f"Invalid token: {e}") from e

    try:
        user_id = UUID(str(payload["sub"]))
    except ValueError as e:
        raise AuthenticationError("Invalid subject claim") from e

    app_metadata = payload.get("app_metadata")
    is_admin = isinstance(app_metadata, dict) and app_metadata.get("role") == "admin"

    email = payload.get("email")
    role = payload.get("role")
    return AuthenticatedUser(
        user_id=user_id,
        email=str(email) if email else None,
        role=str(role) if role else None,
        is_admin=is_admin,
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> AuthenticatedUser:
    """
    FastAPI dependency to authenticate the caller.

    Accepts: Authorization: Bearer {supabase_access_token}

    Usage:
        @router.get("/v1/me")
        async def me(user: AuthenticatedUser = Depends(get_current_user)):
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
        return verify_access_token(credentials.credentials)
    except AuthenticationError as exc:
        logger.warning("access_token_rejected", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired access token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


async def require_admin(
    user: AuthenticatedUser = Depends(get_current_user),
) -> AuthenticatedUser:
    """FastAPI dependency that only lets dashboard admins through."""
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return user


def get_payment_provider() -> PaymentProvider:
    """
    FastAPI dependency for the Stripe provider.

    Raises:
        HTTPException 503 if Stripe isn't configured
    """
    if not settings.stripe_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider not configured",
        )
    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
        site_url=settings.site_url,
        currency=settings.stripe_currency,
        api_base=settings.stripe_api_base,
    )


def get_generation_provider() -> GenerationProvider:
    """
    FastAPI dependency for the Gemini provider.

    Raises:
        HTTPException 503 if Gemini isn't configured
    """
    if not settings.gemini_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Generation provider not configured",
        )
    return GeminiProvider(
        api_key=settings.gemini_api_key,
        api_base=settings.gemini_api_base,
        timeout_seconds=settings.gemini_timeout_seconds,
    )
