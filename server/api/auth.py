"""Bearer-token admin check for the /admin routes."""

import hmac

from loguru import logger

from server.datasource.bgg.refresh import Caller
from server.exceptions import ForbiddenError, UnauthorizedError


def parse_bearer(authorization: str | None) -> str | None:
    """Token from an ``Authorization: Bearer <token>`` header, if well formed."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AdminAuth:
    """
    Resolves the admin caller from an Authorization header value.

    A missing or malformed header is a 401; a token that is not one of the
    configured admin tokens is a 403. Both are raised before the route
    touches the cache or the upstream.
    """

    def __init__(self, tokens: set[str]):
        self.tokens = tokens

    def __call__(self, authorization: str | None) -> Caller:
        token = parse_bearer(authorization)
        if token is None:
            raise UnauthorizedError("Must be authenticated")

        if not any(hmac.compare_digest(token, t) for t in self.tokens):
            logger.warning("Rejected admin request with unknown token")
            raise ForbiddenError("Must be an admin")

        return Caller(user_id=f"admin:{token[:4]}", is_admin=True)
