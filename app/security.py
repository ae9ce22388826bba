from __future__ import annotations

import hmac

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.errors import ApiError
from app.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)


def require_cron_secret(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> None:
    expected = (get_settings().cron_secret or "").strip()
    if not expected:
        raise ApiError(status_code=503, code="CRON_NOT_CONFIGURED", message="Cron secret is not configured.")
    provided = credentials.credentials if credentials is not None else ""
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Invalid cron secret.")

    request.state.actor = "cron"
    request.state.actor_id = "cron"
