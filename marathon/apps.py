from django.apps import AppConfig


class MarathonConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "marathon"
