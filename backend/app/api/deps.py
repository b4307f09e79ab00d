"""
FastAPI dependencies shared by the v1 routers.

Authentication is handled upstream; write endpoints only need the acting
user's id, passed in the ``X-User-ID`` header.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, Request

from backend.app.core.errors import AuthenticationError
from backend.app.lifecycle.controller import WarningLifecycleController
from backend.app.lifecycle.store import WarningStore
from backend.app.notifications.directory import RecipientDirectory
from backend.app.services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_controller(services: Services = Depends(get_services)) -> WarningLifecycleController:
    return services.controller


def get_store(services: Services = Depends(get_services)) -> WarningStore:
    return services.store


def get_directory(services: Services = Depends(get_services)) -> RecipientDirectory:
    return services.directory


def get_actor(x_user_id: Optional[str] = Header(None, alias="X-User-ID")) -> str:
    """Acting user id; 401 when the header is missing or blank."""
    if x_user_id is None or not x_user_id.strip():
        raise AuthenticationError()
    return x_user_id.strip()
