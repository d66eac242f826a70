"""
Inkwell Backend: Route Dependencies
===================================

What:  FastAPI dependencies shared by the route modules.
How:   Components are built once by create_app() and kept on app.state;
       these functions hand them to handlers.

Identity:
    Authentication happens upstream. The gateway forwards the
    authenticated user's id in X-User-Id; a missing or malformed header
    is rejected by FastAPI's own validation (422).

Worker callbacks:
    The OCR worker authenticates with the shared secret in X-Worker-Token,
    compared in constant time. An unset secret rejects every callback.
"""

import hmac
from typing import Optional
from uuid import UUID

from fastapi import Header, Request

from inkwell.exceptions import ForbiddenError
from inkwell.services.asset_lifecycle import AssetLifecycle


async def get_current_user_id(
    x_user_id: UUID = Header(..., alias="X-User-Id", description="Authenticated user id"),
) -> UUID:
    return x_user_id


def get_lifecycle(request: Request) -> AssetLifecycle:
    return request.app.state.lifecycle


async def verify_worker_token(
    request: Request,
    x_worker_token: Optional[str] = Header(default=None, alias="X-Worker-Token"),
) -> None:
    expected = request.app.state.callback_token
    if not expected or not x_worker_token or not hmac.compare_digest(
        x_worker_token.encode(), expected.encode()
    ):
        raise ForbiddenError(resource="worker callback")
