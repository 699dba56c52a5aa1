"""
VoxNotes Backend — Route Dependencies
=======================================

What:  Caller identity for the trigger surface.
How:   User-facing routes read the owner from the `X-User-ID` header set by
       the upstream auth proxy. Cron routes require
       `Authorization: Bearer <CRON_SECRET>`, compared in constant time.
"""

import hmac
import logging
from typing import Optional

from fastapi import Header

from voxnotes.config import settings
from voxnotes.exceptions import AuthRequiredError

logger = logging.getLogger(__name__)


async def require_owner(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise AuthRequiredError()
    return x_user_id.strip()


async def require_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    if not settings.cron_secret:
        # An unset secret would otherwise make "Bearer " a valid token
        logger.error("Cron trigger called but CRON_SECRET is not configured")
        raise AuthRequiredError(message="Cron triggers are disabled")

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), settings.cron_secret):
        logger.warning("Rejected cron trigger with invalid credentials")
        raise AuthRequiredError(message="Invalid cron credentials")
