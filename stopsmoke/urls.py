"""
URL configuration for stopsmoke project.

REST endpoints live under ``api/``; the realtime hub is routed separately
in ``stopsmoke.asgi``.
"""
from django.contrib import admin
from django.urls import path, include

from rest_framework import permissions
from rest_framework.authentication import SessionAuthentication

from drf_yasg import openapi
from drf_yasg.views import get_schema_view as get_swagger_schema_view

from people.authentication import BearerTokenAuthentication

schema_view = get_swagger_schema_view(
    openapi.Info(
        title="StopSmoke API",
        default_version="1.0.0",
        description="API documentation for the StopSmoke messaging and marathon services"
    ),
    public=True,
    permission_classes=[permissions.AllowAny],
    authentication_classes=[
        BearerTokenAuthentication,
        SessionAuthentication,
    ]
)


urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/auth/", include("people.urls")),
    path("api/messages/", include("message.urls")),
    path("api/marathon/", include("marathon.urls")),
    path("docs/", schema_view.with_ui("swagger", cache_timeout=10), name="docs"),
]
