from django.contrib import admin

from .models import Marathon, MarathonParticipant


class MarathonParticipantInline(admin.TabularInline):
    model = MarathonParticipant
    extra = 0


@admin.register(Marathon)
class MarathonAdmin(admin.ModelAdmin):
    list_display = ["title", "start_date", "end_date", "is_active"]
    list_filter = ["is_active", "start_date"]
    search_fields = ["title"]
    inlines = [MarathonParticipantInline]
