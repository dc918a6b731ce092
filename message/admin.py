from django.contrib import admin

from .models import Conversation, ConversationParticipant, Message


class ParticipantInline(admin.TabularInline):
    model = ConversationParticipant
    extra = 0
    readonly_fields = ["joined_at", "last_read_at"]


@admin.register(Conversation)
class ConversationAdmin(admin.ModelAdmin):
    list_display = ["id", "is_global", "created_at", "last_message_at"]
    list_filter = ["is_global"]
    date_hierarchy = "created_at"
    inlines = [ParticipantInline]


@admin.register(Message)
class MessageAdmin(admin.ModelAdmin):
    list_display = ["id", "conversation", "sender", "sent_at", "is_read", "is_deleted"]
    list_filter = ["is_read", "is_deleted"]
    search_fields = ["content", "sender__email"]
