"""Bearer-token actor resolution."""

from typing import Dict, Optional

from fastapi import Header, Request

from syncserver import config
from syncserver.exceptions import AuthenticationRequired


def resolve_actor(authorization: Optional[str], tokens: Dict[str, str]) -> str:
    """
    Map an Authorization header to an actor id.

    Args:
        authorization: Header value, expected "Bearer <token>"
        tokens: Token -> actor id table

    Returns:
        Actor id of the token's owner

    Raises:
        AuthenticationRequired: If the header is missing, malformed or the token is unknown
    """
    if not authorization:
        raise AuthenticationRequired("Missing Authorization header")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationRequired("Invalid authorization header format")

    actor_id = tokens.get(token.strip())
    if actor_id is None:
        raise AuthenticationRequired("Unknown API token")
    return actor_id


async def get_current_actor(request: Request, authorization: Optional[str] = Header(None)) -> str:
    """
    FastAPI dependency resolving the requesting actor.

    Returns:
        actor_id of the authenticated caller

    Raises:
        AuthenticationRequired: 401 if the token is missing or unknown
    """
    actor_id = resolve_actor(authorization, config.API_TOKENS)
    request.state.actor_id = actor_id
    return actor_id


def get_origin(request: Request) -> Optional[str]:
    """
    Network origin of a request: first X-Forwarded-For hop, else the peer address.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None
