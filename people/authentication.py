from urllib.parse import parse_qs

from django.contrib.auth.models import AnonymousUser
from channels.auth import AuthMiddlewareStack
from channels.db import database_sync_to_async
from channels.middleware import BaseMiddleware
from rest_framework.authentication import TokenAuthentication
from rest_framework.authtoken.models import Token


class BearerTokenAuthentication(TokenAuthentication):
    """
    DRF token authentication using the ``Authorization: Bearer <key>`` header.
    """
    keyword = "Bearer"


@database_sync_to_async
def get_user_for_token(key: str):
    token = Token.objects.select_related("user").filter(key=key).first()
    if token is None or not token.user.is_active:
        return AnonymousUser()
    return token.user


def token_from_scope(scope):
    # Browsers cannot set headers on a WebSocket handshake, so the key may
    # arrive as ``?access_token=`` instead.
    query = parse_qs(scope.get("query_string", b"").decode())
    if query.get("access_token"):
        return query["access_token"][0]

    for name, value in scope.get("headers", []):
        if name == b"authorization":
            keyword, _, key = value.decode().partition(" ")
            if keyword.lower() == "bearer" and key:
                return key.strip()
    return None


class TokenAuthMiddleware(BaseMiddleware):
    """
    Resolves a bearer token on the WebSocket handshake to ``scope["user"]``.
    """

    async def __call__(self, scope, receive, send):
        scope = dict(scope)
        key = token_from_scope(scope)
        if key:
            scope["user"] = await get_user_for_token(key)
        else:
            scope.setdefault("user", AnonymousUser())
        return await super().__call__(scope, receive, send)


def TokenAuthMiddlewareStack(inner):
    return AuthMiddlewareStack(TokenAuthMiddleware(inner))
