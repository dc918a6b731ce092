"""
ASGI config for stopsmoke project.

It exposes the ASGI callable as a module-level variable named ``application``.
HTTP goes to Django, WebSocket connections go through the bearer token
middleware to the chat consumer.

For more information on this file, see
https://docs.djangoproject.com/en/5.0/howto/deployment/asgi/
"""

import os

from django.core.asgi import get_asgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "stopsmoke.settings")

django_asgi_app = get_asgi_application()

from channels.routing import ProtocolTypeRouter, URLRouter  # noqa: E402

from message.urls import websocket_urlpatterns as message_websocket_urlpatterns  # noqa: E402
from people.authentication import TokenAuthMiddlewareStack  # noqa: E402

application = ProtocolTypeRouter({
    "http": django_asgi_app,
    "websocket": TokenAuthMiddlewareStack(
        URLRouter(message_websocket_urlpatterns)
    ),
})
