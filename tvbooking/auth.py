"""Admin authentication for maintenance and back-office endpoints"""

import logging
from typing import Optional

from fastapi import Header, HTTPException

from . import config
from .webhook_security import constant_time_compare

logger = logging.getLogger(__name__)


def require_admin_token(x_admin_token: Optional[str] = Header(default=None)):
    """Shared-secret guard: X-Admin-Token must match ADMIN_API_TOKEN"""
    if not config.ADMIN_API_TOKEN:
        raise HTTPException(status_code=503, detail="Maintenance endpoints are disabled")
    if not constant_time_compare(x_admin_token or "", config.ADMIN_API_TOKEN):
        logger.warning("🚫 Rejected admin call with a bad token")
        raise HTTPException(status_code=403, detail="Forbidden")
