"""
Shared router dependencies
"""

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from app.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=503, detail="Services not started")
    return container


def require_api_key(
    authorization: Optional[str] = Header(None),
    container: ServiceContainer = Depends(get_container)
) -> None:
    """Bearer API key check for operator and generation endpoints"""
    api_key = container.settings.api_key
    if not api_key or not authorization:
        raise HTTPException(status_code=401, detail="Invalid API key")
    if not hmac.compare_digest(authorization.encode(), f"Bearer {api_key}".encode()):
        raise HTTPException(status_code=401, detail="Invalid API key")
