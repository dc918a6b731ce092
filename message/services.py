"""
Conversation store.

All reads and writes of conversations, participants and messages go through
this module, both from the REST views and from the chat consumer. The
functions are synchronous ORM code; the consumer calls them through
``database_sync_to_async``.

Conflicting writes are arbitrated by the database:
``Conversation.direct_key`` is unique per user pair and
``ConversationParticipant`` is unique per (conversation, user), so two
racing ``find_or_create_conversation`` calls cannot produce two
conversations for the same pair. A partial unique constraint keeps a single
global conversation.
"""
import logging
from datetime import datetime, timezone as dt_timezone

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import (
    Count, DateTimeField, F, IntegerField, OuterRef, Prefetch, Q, Subquery, Value,
)
from django.db.models.functions import Coalesce, Greatest
from django.utils import timezone

from .exceptions import Conflict, Forbidden, InvalidRequest, NotFound, NotParticipant, Transient
from .models import Conversation, ConversationParticipant, Message

logger = logging.getLogger(__name__)

User = get_user_model()

# Stand-in for a null read/cleared marker: every message is newer than this.
EPOCH = datetime(1970, 1, 1, tzinfo=dt_timezone.utc)


# ============ Participants ===================
def get_participant(conversation_id: int, user_id: int) -> ConversationParticipant:
    participant = ConversationParticipant.objects.filter(
        conversation_id=conversation_id, user_id=user_id
    ).select_related("conversation", "user").first()
    if participant is None:
        raise NotFound("Participant not found.")
    return participant


def require_participant(conversation_id: int, user_id: int) -> ConversationParticipant:
    """Like ``get_participant`` but tells a missing conversation apart from a foreign one."""
    if not Conversation.objects.filter(pk=conversation_id).exists():
        raise NotFound("Conversation not found.")
    participant = ConversationParticipant.objects.filter(
        conversation_id=conversation_id, user_id=user_id
    ).select_related("conversation", "user").first()
    if participant is None:
        raise NotParticipant()
    return participant


def participant_user_ids(conversation_id: int) -> list:
    return list(
        ConversationParticipant.objects.filter(
            conversation_id=conversation_id
        ).values_list("user_id", flat=True)
    )


# ============ Conversations ===================
def find_direct_conversation(user_a_id: int, user_b_id: int):
    return Conversation.objects.filter(
        direct_key=Conversation.direct_key_for(user_a_id, user_b_id)
    ).first()


def _create_direct_conversation(user_a_id: int, user_b_id: int) -> Conversation:
    try:
        with transaction.atomic():
            conversation = Conversation.objects.create(
                direct_key=Conversation.direct_key_for(user_a_id, user_b_id)
            )
            ConversationParticipant.objects.bulk_create([
                ConversationParticipant(conversation=conversation, user_id=user_a_id),
                ConversationParticipant(conversation=conversation, user_id=user_b_id),
            ])
    except IntegrityError as exc:
        raise Conflict() from exc
    return conversation


def find_or_create_conversation(user_a_id: int, user_b_id: int):
    """
    Return ``(conversation, created)`` for the direct conversation between
    two users, creating it with both participants if it does not exist yet.

    When a concurrent call wins the creation race the resulting ``Conflict``
    is absorbed once by re-reading the conversation the winner created.
    A soft-deleted participation of ``user_a_id`` is restored.
    """
    if user_a_id == user_b_id:
        raise InvalidRequest("Cannot create conversation with yourself.")

    conversation = find_direct_conversation(user_a_id, user_b_id)
    if conversation is None:
        try:
            return _create_direct_conversation(user_a_id, user_b_id), True
        except Conflict:
            logger.info(
                "Concurrent creation of conversation for users %s and %s, re-fetching",
                user_a_id, user_b_id,
            )
            conversation = find_direct_conversation(user_a_id, user_b_id)
            if conversation is None:
                raise

    ConversationParticipant.objects.filter(
        conversation=conversation, user_id=user_a_id, is_deleted=True
    ).update(is_deleted=False)
    return conversation, False


def find_global_conversation():
    return Conversation.objects.filter(is_global=True).first()


def _create_global_conversation() -> Conversation:
    try:
        with transaction.atomic():
            conversation = Conversation.objects.create(is_global=True)
    except IntegrityError as exc:
        raise Conflict("Global conversation already exists.") from exc
    logger.info("Created global conversation %s", conversation.pk)
    return conversation


def ensure_global_participant(user_id: int) -> Conversation:
    conversation = find_global_conversation()
    if conversation is None:
        try:
            conversation = _create_global_conversation()
        except Conflict:
            # At most one global conversation exists, so the winner's is ours.
            conversation = find_global_conversation()
            if conversation is None:
                raise

    participant, created = ConversationParticipant.objects.get_or_create(
        conversation=conversation, user_id=user_id
    )
    if not created and participant.is_deleted:
        participant.is_deleted = False
        participant.save(update_fields=["is_deleted"])
    return conversation


def list_conversations_for_user(user_id: int) -> list:
    """
    The user's visible participations, each annotated with ``unread_count``
    and the latest visible message (``last_message_id``,
    ``last_message_content``, ``last_message_sent_at``) and carrying
    ``other_participant`` (None for the global conversation).

    The global conversation comes first, then the most recently active;
    conversations without messages go last.
    """
    epoch = Value(EPOCH, output_field=DateTimeField())
    visible_after = Coalesce(OuterRef("cleared_history_at"), epoch, output_field=DateTimeField())
    read_after = Greatest(
        Coalesce(OuterRef("last_read_at"), epoch, output_field=DateTimeField()),
        visible_after,
        output_field=DateTimeField(),
    )

    unread = (
        Message.objects.filter(conversation_id=OuterRef("conversation_id"), sent_at__gt=read_after)
        .exclude(sender_id=user_id)
        .order_by()
        .values("conversation_id")
        .annotate(total=Count("id"))
        .values("total")
    )
    latest = Message.objects.filter(
        conversation_id=OuterRef("conversation_id"), sent_at__gt=visible_after
    ).order_by("-sent_at", "-id")

    participations = (
        ConversationParticipant.objects.filter(user_id=user_id, is_deleted=False)
        .select_related("conversation")
        .prefetch_related(
            Prefetch(
                "conversation__participants",
                queryset=ConversationParticipant.objects.select_related("user"),
            )
        )
        .annotate(
            unread_count=Coalesce(Subquery(unread, output_field=IntegerField()), Value(0)),
            last_message_id=Subquery(latest.values("id")[:1]),
            last_message_content=Subquery(latest.values("content")[:1]),
            last_message_sent_at=Subquery(latest.values("sent_at")[:1], output_field=DateTimeField()),
        )
        .order_by(
            "-conversation__is_global",
            F("last_message_sent_at").desc(nulls_last=True),
            "-conversation_id",
        )
    )

    result = []
    for participation in participations:
        participation.other_participant = None
        if not participation.conversation.is_global:
            participation.other_participant = next(
                (p for p in participation.conversation.participants.all() if p.user_id != user_id),
                None,
            )
            if participation.other_participant is None:
                continue
        result.append(participation)
    return result


def _lock_conversation(conversation_id: int):
    # Sends and read markers on one conversation read the clock while holding
    # its row lock, so sent_at and last_read_at follow commit order.
    return Conversation.objects.select_for_update().filter(pk=conversation_id).first()


def mark_read(conversation_id: int, user_id: int) -> ConversationParticipant:
    with transaction.atomic():
        _lock_conversation(conversation_id)
        participant = get_participant(conversation_id, user_id)
        now = timezone.now()
        # The read marker only moves forward.
        if participant.last_read_at is None or participant.last_read_at < now:
            participant.last_read_at = now
            participant.save(update_fields=["last_read_at"])

        Message.objects.filter(
            conversation_id=conversation_id,
            sent_at__lte=participant.last_read_at,
            is_read=False,
        ).exclude(sender_id=user_id).update(is_read=True)
    return participant


def set_blocked(conversation_id: int, user_id: int, blocked: bool) -> ConversationParticipant:
    participant = get_participant(conversation_id, user_id)
    participant.is_blocked = blocked
    participant.save(update_fields=["is_blocked"])
    return participant


def clear_history(conversation_id: int, user_id: int) -> ConversationParticipant:
    participant = get_participant(conversation_id, user_id)
    participant.cleared_history_at = timezone.now()
    participant.save(update_fields=["cleared_history_at"])
    return participant


def delete_conversation(conversation_id: int, user_id: int) -> ConversationParticipant:
    participant = get_participant(conversation_id, user_id)
    participant.is_deleted = True
    participant.save(update_fields=["is_deleted"])
    return participant


# ============ Messages ===================
def validate_content(content) -> str:
    if not isinstance(content, str) or not content.strip():
        raise InvalidRequest("Message content cannot be empty.")
    limit = settings.CHAT_MESSAGE_MAX_LENGTH
    if len(content) > limit:
        raise InvalidRequest(f"Message content cannot exceed {limit} characters.")
    return content


def append_message(conversation_id: int, sender_id: int, content: str) -> Message:
    content = validate_content(content)
    participant = ConversationParticipant.objects.filter(
        conversation_id=conversation_id, user_id=sender_id
    ).select_related("user").first()
    if participant is None:
        raise NotParticipant()

    try:
        with transaction.atomic():
            _lock_conversation(conversation_id)
            message = Message.objects.create(
                conversation_id=conversation_id,
                sender=participant.user,
                content=content,
                sent_at=timezone.now(),
            )
            Conversation.objects.filter(pk=conversation_id).update(
                last_message_at=message.sent_at
            )
    except DatabaseError as exc:
        logger.exception("Failed to store message in conversation %s", conversation_id)
        raise Transient() from exc
    return message


def visible_messages(participant: ConversationParticipant):
    messages = Message.objects.filter(
        conversation_id=participant.conversation_id
    ).select_related("sender")
    if participant.cleared_history_at is not None:
        messages = messages.filter(sent_at__gt=participant.cleared_history_at)
    return messages


def list_messages(conversation_id: int, user_id: int, before_message_id=None, count=None) -> list:
    """
    One page of history in display order (oldest first): the ``count``
    newest visible messages older than ``before_message_id`` if given.
    """
    return page_messages(require_participant(conversation_id, user_id), before_message_id, count)


def page_messages(participant: ConversationParticipant, before_message_id=None, count=None) -> list:
    """``list_messages`` for a participation the caller already resolved."""
    conversation_id = participant.conversation_id
    if count is None:
        count = settings.CHAT_HISTORY_PAGE_SIZE
    if not 1 <= count <= settings.CHAT_HISTORY_MAX_PAGE_SIZE:
        raise InvalidRequest(
            f"count must be between 1 and {settings.CHAT_HISTORY_MAX_PAGE_SIZE}."
        )

    messages = visible_messages(participant)
    if before_message_id is not None:
        cursor = Message.objects.filter(
            pk=before_message_id, conversation_id=conversation_id
        ).first()
        if cursor is None:
            raise InvalidRequest("Unknown pagination cursor.")
        messages = messages.filter(
            Q(sent_at__lt=cursor.sent_at) | Q(sent_at=cursor.sent_at, id__lt=cursor.id)
        )

    page = list(messages.order_by("-sent_at", "-id")[:count])
    page.reverse()
    return page


def delete_message(message_id: int, user_id: int) -> Message:
    message = Message.objects.filter(pk=message_id).first()
    if message is None:
        raise NotFound("Message not found.")
    if message.sender_id != user_id:
        raise Forbidden("Only the sender can delete a message.")
    if message.is_deleted:
        raise InvalidRequest("Message is already deleted.")

    message.is_deleted = True
    message.content = ""
    message.save(update_fields=["is_deleted", "content"])
    return message


# ============ Users ===================
def touch_last_seen(user_id: int) -> None:
    User.objects.filter(pk=user_id).update(last_seen=timezone.now())
