from django.db import models
from django.conf import settings
from django.utils import timezone


class Conversation(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    last_message_at = models.DateTimeField(null=True, blank=True, db_index=True)
    is_global = models.BooleanField(default=False)
    # "<lower user id>:<higher user id>" for direct conversations; the unique
    # constraint is what arbitrates two racing creations for the same pair.
    direct_key = models.CharField(max_length=64, unique=True, null=True, blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["is_global"],
                condition=models.Q(is_global=True),
                name="single_global_conversation",
            ),
        ]

    def __str__(self):
        return f"Conversation {self.pk}"

    @staticmethod
    def direct_key_for(user_a_id, user_b_id):
        low, high = sorted([user_a_id, user_b_id])
        return f"{low}:{high}"


class ConversationParticipant(models.Model):
    conversation = models.ForeignKey(
        Conversation,
        on_delete=models.CASCADE,
        related_name="participants"
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="conversations"
    )
    joined_at = models.DateTimeField(auto_now_add=True)
    last_read_at = models.DateTimeField(null=True, blank=True)
    cleared_history_at = models.DateTimeField(null=True, blank=True)
    is_blocked = models.BooleanField(default=False)
    is_deleted = models.BooleanField(default=False)

    class Meta:
        unique_together = ("conversation", "user")

    def __str__(self):
        return f"User {self.user_id} in conversation {self.conversation_id}"


class Message(models.Model):
    conversation = models.ForeignKey(
        Conversation,
        on_delete=models.CASCADE,
        related_name="messages"
    )
    sender = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name="sent_messages",
        null=True,
    )
    content = models.TextField()
    sent_at = models.DateTimeField(default=timezone.now)
    is_read = models.BooleanField(default=False)
    is_deleted = models.BooleanField(default=False)

    class Meta:
        ordering = ["sent_at", "id"]
        indexes = [
            models.Index(fields=["conversation", "sent_at"], name="message_conv_sent_at_idx"),
        ]

    def __str__(self):
        return f"{self.sender_id}: {self.content[:30]}"
