"""Request-side access guard.

Turns a bearer token plus request parameters into an
:class:`AccessContext`, or raises one of the :class:`AccessError`
subclasses. Every denial carries the same message, so callers cannot
map the tree's private topology.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from canopy.auth.jwt import TokenExpiredError, TokenInvalidError, account_id_from_token
from canopy.auth.permissions import Permission, parse_permission
from canopy.core.resolver import AccessRule, PermissionResolver
from canopy.storage.base import StoreUnavailableError

logger = logging.getLogger(__name__)

NODE_ID_KEYS = ("communityId", "subCommunityId")


class AccessError(Exception):
    """Base class for guard failures. ``status`` mirrors an HTTP status code."""

    status = 500


class BadRequestError(AccessError):
    status = 400


class AuthenticationError(AccessError):
    status = 401


class ForbiddenError(AccessError):
    status = 403

    def __init__(self, message: str = "Not authorized") -> None:
        super().__init__(message)


class ServiceUnavailableError(AccessError):
    status = 503


@dataclass(frozen=True)
class AccessContext:
    account_id: str
    node_id: str
    permission: Permission
    rule: AccessRule
    limited: bool = False


def extract_node_id(
    params: Mapping[str, Any] | None,
    payload: Mapping[str, Any] | None,
    *,
    param: str = "communityId",
) -> str:
    """Find the target community id in path params, then the payload."""
    keys = list(dict.fromkeys((param, *NODE_ID_KEYS)))
    for source in (params or {}, payload or {}):
        for key in keys:
            value = source.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    raise BadRequestError("Community ID required")


class AccessGuard:
    """Authenticates callers and authorizes them against the resolver."""

    def __init__(
        self, resolver: PermissionResolver, *, secret: str, algorithm: str = "HS256"
    ) -> None:
        self.resolver = resolver
        self._secret = secret
        self._algorithm = algorithm

    def authenticate(self, token: str | None) -> str:
        if not token:
            raise AuthenticationError("Authentication required")
        if not self._secret:
            logger.warning("Rejecting token: no JWT secret configured")
            raise AuthenticationError("Token is invalid")
        try:
            return account_id_from_token(token, self._secret, algorithm=self._algorithm)
        except TokenExpiredError as e:
            raise AuthenticationError("Token has expired") from e
        except TokenInvalidError as e:
            raise AuthenticationError("Token is invalid") from e

    async def authorize(
        self,
        token: str | None,
        permission: Permission | str,
        *,
        params: Mapping[str, Any] | None = None,
        payload: Mapping[str, Any] | None = None,
        param: str = "communityId",
        include_inactive: bool = False,
    ) -> AccessContext:
        """Authenticate, locate the target node and check the permission.

        ``include_inactive`` evaluates a soft-deleted node as if it were
        active.

        Raises:
            AuthenticationError: Missing, expired or invalid token.
            BadRequestError: No community id in params or payload, or an
                unknown permission name.
            ForbiddenError: The resolver denied the request.
            StoreUnavailableError: The store could not answer.
        """
        account_id = self.authenticate(token)
        node_id = extract_node_id(params, payload, param=param)
        try:
            permission = parse_permission(permission)
        except ValueError as e:
            raise BadRequestError(str(e)) from e

        decision = await self.resolver.resolve(
            account_id, node_id, permission, include_inactive=include_inactive
        )
        if not decision.allowed or decision.rule is None:
            raise ForbiddenError()
        return AccessContext(
            account_id=account_id,
            node_id=node_id,
            permission=permission,
            rule=decision.rule,
            limited=decision.limited,
        )

    def requires(
        self, permission: Permission | str, *, param: str = "communityId"
    ) -> Callable[[Callable[..., Awaitable[Any]]], Callable[..., Awaitable[Any]]]:
        """Decorate an async handler so it only runs for authorized callers.

        The wrapped handler is called as ``handler(ctx, **kwargs)``; the
        wrapper itself takes ``token``, ``params`` and ``payload`` keyword
        arguments. Transient store failures surface as
        :class:`ServiceUnavailableError`.
        """
        permission = parse_permission(permission)

        def decorator(handler: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
            @functools.wraps(handler)
            async def wrapper(
                *,
                token: str | None,
                params: Mapping[str, Any] | None = None,
                payload: Mapping[str, Any] | None = None,
                **kwargs: Any,
            ) -> Any:
                try:
                    ctx = await self.authorize(
                        token, permission, params=params, payload=payload, param=param
                    )
                except StoreUnavailableError as e:
                    logger.error("Access check unavailable: %s", e)
                    raise ServiceUnavailableError("Service temporarily unavailable") from e
                return await handler(ctx, params=params, payload=payload, **kwargs)

            return wrapper

        return decorator
