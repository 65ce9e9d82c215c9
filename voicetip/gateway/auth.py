import logging
from typing import Annotated

from fastapi import Header, HTTPException, Request, WebSocket, WebSocketException, status

from voicetip.gateway.domain_models import User
from voicetip.gateway.services import Services

LOGGER = logging.getLogger("auth")

# Identity is established upstream; the gateway trusts this header.
USER_ID_HEADER = "X-User-ID"


def _parse_user_id(raw: str) -> int | None:
    try:
        return int(raw)
    except ValueError:
        return None


async def authenticate(
    request: Request,
    x_user_id: Annotated[str | None, Header(alias=USER_ID_HEADER)] = None,
) -> User:
    if x_user_id is None:
        LOGGER.debug("no credentials provided")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="not authenticated")

    user_id = _parse_user_id(x_user_id)
    services: Services = request.app.state.services
    user = await services.store.get_user(user_id) if user_id is not None else None
    if user is None:
        LOGGER.debug(f"unknown user id {x_user_id!r}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unknown user")

    request.state.user_id = user.id
    return user


async def authenticate_ws(websocket: WebSocket) -> User:
    """Authenticate WebSocket connection via the `user_id` query param."""
    raw = websocket.query_params.get("user_id")
    user_id = _parse_user_id(raw) if raw else None
    if user_id is None:
        LOGGER.warning("WS auth: missing or malformed user_id")
        raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason="Not authenticated")

    services: Services = websocket.app.state.services
    user = await services.store.get_user(user_id)
    if user is None:
        LOGGER.warning(f"WS auth: unknown user {user_id}")
        raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason="Unknown user")
    return user
