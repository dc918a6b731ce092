from django.contrib.auth import get_user_model
from rest_framework import serializers

from .models import Message, ConversationParticipant
from .presence import presence

User = get_user_model()


class MessageSerializer(serializers.ModelSerializer):
    conversation_id = serializers.IntegerField(read_only=True)
    sender_id = serializers.IntegerField(read_only=True)
    sender_name = serializers.SerializerMethodField()

    class Meta:
        model = Message
        fields = [
            "id",
            "conversation_id",
            "sender_id",
            "sender_name",
            "content",
            "sent_at",
            "is_read",
            "is_deleted",
        ]

    def get_sender_name(self, obj):
        return obj.sender.display_name if obj.sender else "Unknown"


class ParticipantSerializer(serializers.ModelSerializer):
    user_id = serializers.IntegerField(read_only=True)
    user_name = serializers.CharField(source="user.display_name", read_only=True)
    email = serializers.EmailField(source="user.email", read_only=True)

    class Meta:
        model = ConversationParticipant
        fields = ["user_id", "user_name", "email", "joined_at"]


class ConversationListItemSerializer(serializers.Serializer):
    """
    Renders a participation annotated by
    ``services.list_conversations_for_user``, adding live presence.
    """
    id = serializers.IntegerField(source="conversation_id")
    is_global = serializers.BooleanField(source="conversation.is_global")
    other_user_id = serializers.SerializerMethodField()
    other_user_name = serializers.SerializerMethodField()
    other_user_email = serializers.SerializerMethodField()
    other_user_last_seen = serializers.SerializerMethodField()
    is_other_user_online = serializers.SerializerMethodField()
    last_message = serializers.CharField(source="last_message_content", allow_null=True)
    last_message_at = serializers.DateTimeField(source="last_message_sent_at", allow_null=True)
    unread_count = serializers.IntegerField()
    is_blocked = serializers.BooleanField()
    online_count = serializers.SerializerMethodField()

    def _other_user(self, obj):
        other = obj.other_participant
        return other.user if other else None

    def get_other_user_id(self, obj):
        user = self._other_user(obj)
        return user.pk if user else None

    def get_other_user_name(self, obj):
        user = self._other_user(obj)
        return user.display_name if user else "Global Chat"

    def get_other_user_email(self, obj):
        user = self._other_user(obj)
        return user.email if user else ""

    def get_other_user_last_seen(self, obj):
        user = self._other_user(obj)
        if user is None or user.last_seen is None:
            return None
        return serializers.DateTimeField().to_representation(user.last_seen)

    def get_is_other_user_online(self, obj):
        if obj.conversation.is_global:
            return True
        return presence.is_online(obj.other_participant.user_id)

    def get_online_count(self, obj):
        return presence.online_count() if obj.conversation.is_global else 0


class ConversationDetailSerializer(serializers.Serializer):
    """
    Renders ``{"participant": ..., "messages": [...]}`` for the caller's
    participation in a conversation.
    """
    id = serializers.IntegerField(source="participant.conversation_id")
    created_at = serializers.DateTimeField(source="participant.conversation.created_at")
    last_message_at = serializers.DateTimeField(
        source="participant.conversation.last_message_at", allow_null=True
    )
    is_global = serializers.BooleanField(source="participant.conversation.is_global")
    is_blocked = serializers.BooleanField(source="participant.is_blocked")
    is_blocked_by_other = serializers.SerializerMethodField()
    participants = serializers.SerializerMethodField()
    messages = MessageSerializer(many=True)

    def _participants(self, obj):
        return obj["participant"].conversation.participants.select_related("user").order_by("id")

    def get_is_blocked_by_other(self, obj):
        participant = obj["participant"]
        if participant.conversation.is_global:
            return False
        return any(
            p.is_blocked for p in self._participants(obj) if p.user_id != participant.user_id
        )

    def get_participants(self, obj):
        return ParticipantSerializer(self._participants(obj), many=True).data


class CreateConversationSerializer(serializers.Serializer):
    participant_email = serializers.EmailField()


class MessagePageQuerySerializer(serializers.Serializer):
    before_message_id = serializers.IntegerField(required=False, min_value=1)
    count = serializers.IntegerField(required=False)


class UserSearchSerializer(serializers.ModelSerializer):
    name = serializers.CharField(source="display_name")

    class Meta:
        model = User
        fields = ["id", "name", "email"]
