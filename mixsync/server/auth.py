"""Authorization gate for the push endpoint."""

import hmac
import logging

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)


async def require_push_auth(request: Request) -> None:
    """Reject pushes without the configured bearer token.

    When no token is configured the gate is open. Verifying user identity is
    left to an upstream proxy; this only checks the shared token.
    """
    token = request.app.state.config.auth.push_token
    if not token:
        return

    header = request.headers.get("Authorization", "")
    scheme, _, supplied = header.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(
        supplied.strip().encode(), token.encode()
    ):
        logger.warning("Rejected unauthorized push")
        raise HTTPException(status_code=401, detail="unauthorized")
