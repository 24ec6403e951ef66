"""
Caller resolution. Tokens are issued by the external identity service; this core only
maps a bearer token to (identity, role).
"""
from abc import ABC, abstractmethod

import redis.asyncio as redis

from mandados.errors import AuthenticationError
from mandados.models import Caller, Role


class Authenticator(ABC):
    @abstractmethod
    async def authenticate(self, token: str | None) -> Caller:
        """Return the caller for token or raise AuthenticationError."""


def _to_caller(identity: str | None, role: str | None) -> Caller:
    if not identity or not role:
        raise AuthenticationError("invalid token")
    try:
        return Caller(identity=identity, role=Role(role))
    except ValueError:
        raise AuthenticationError(f"unknown role {role!r}")


class StaticAuthenticator(Authenticator):
    """Fixed token table, "token" -> "identity:role". For tests and local runs."""

    def __init__(self, tokens: dict[str, str]):
        self._tokens = dict(tokens)

    async def authenticate(self, token: str | None) -> Caller:
        entry = self._tokens.get(token or "")
        if entry is None:
            raise AuthenticationError("invalid token")
        identity, _, role = entry.partition(":")
        return _to_caller(identity, role)


class RedisTokenAuthenticator(Authenticator):
    """Looks up the hash {prefix}{token} -> {identity, role} written by the identity service."""

    def __init__(self, r: redis.Redis, prefix: str = "auth:token:"):
        self._r = r
        self._prefix = prefix

    async def authenticate(self, token: str | None) -> Caller:
        if not token:
            raise AuthenticationError("missing token")
        data = await self._r.hgetall(f"{self._prefix}{token}")
        if not data:
            raise AuthenticationError("invalid token")
        return _to_caller(data.get("identity"), data.get("role"))


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()
