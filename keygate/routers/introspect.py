"""Internal API key introspection endpoint."""

from __future__ import annotations

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from keygate.core.rate_limiter import RateLimiter, RateLimitResult, WindowMode, get_rate_limiter
from keygate.dependencies import get_database_session, rate_limit_action
from keygate.middleware.api_gate import failure_code
from keygate.schemas.usage import APIKeyIntrospectRequest, APIKeyIntrospectResponse
from keygate.services.credential_service import CredentialValidator, get_credential_validator

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/internal/apikeys", tags=["introspection"])

INTROSPECT_ACTION = "apikey_introspect"


@router.post("/introspect", response_model=APIKeyIntrospectResponse)
async def introspect_api_key(
    request: Request,
    payload: APIKeyIntrospectRequest,
    _: Annotated[RateLimitResult, Depends(rate_limit_action(INTROSPECT_ACTION))],
    db_session: Annotated[AsyncSession, Depends(get_database_session)],
    validator: Annotated[CredentialValidator, Depends(get_credential_validator)],
    limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
) -> APIKeyIntrospectResponse:
    """Report whether a raw key is currently usable, without counting it as API traffic."""
    outcome = await validator.validate(db_session, payload.api_key, client_ip=None)
    if outcome.caller is None:
        assert outcome.failure is not None
        return APIKeyIntrospectResponse(valid=False, code=failure_code(outcome.failure))

    await limiter.reset(request.state.rate_limit_scope, mode=WindowMode.ROLLING)
    caller = outcome.caller
    logger.info("api_key_introspected", key_prefix=caller.key_prefix, tier=caller.tier.name)
    return APIKeyIntrospectResponse(
        valid=True,
        owner_id=caller.owner_id,
        tier=caller.tier.name,
        key_id=caller.key_id,
        key_prefix=caller.key_prefix,
    )
