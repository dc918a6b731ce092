from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin

from .models import User


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    list_display = ["username", "email", "name", "is_staff", "is_active", "last_seen"]
    list_filter = ["is_staff", "is_active"]
    search_fields = ["username", "email", "name"]
    fieldsets = BaseUserAdmin.fieldsets + (
        ("Chat", {"fields": ("name", "last_seen")}),
    ) # type: ignore
    add_fieldsets = BaseUserAdmin.add_fieldsets + (
        ("Chat", {"fields": ("email", "name")}),
    )
