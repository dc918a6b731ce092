import json
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import factory
from asgiref.sync import async_to_sync
from channels.db import database_sync_to_async
from channels.layers import get_channel_layer
from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from django.contrib.auth import get_user_model
from django.db import IntegrityError
from django.db.models import QuerySet
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from faker import Faker
from rest_framework.authtoken.models import Token
from rest_framework.test import APIClient

from people.authentication import TokenAuthMiddleware

from . import services
from .exceptions import Conflict, Forbidden, InvalidRequest, NotFound, NotParticipant
from .models import Conversation, ConversationParticipant, Message
from .presence import PresenceRegistry, presence
from .urls import websocket_urlpatterns

User = get_user_model()
fake = Faker()

MOCK_NOW = "django.utils.timezone.now"


class UserFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = User

    username = factory.LazyFunction(lambda: fake.unique.user_name())
    email = factory.LazyFunction(lambda: fake.unique.email())
    name = factory.LazyFunction(fake.name)
    password = factory.PostGenerationMethodCall("set_password", "testpass123")


class ConversationFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Conversation


class MessageFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Message

    conversation = factory.SubFactory(ConversationFactory)
    sender = factory.SubFactory(UserFactory)
    content = factory.LazyFunction(lambda: fake.sentence())


def lock_and_clock_calls(action):
    """Run ``action`` and return the order of row locks and clock reads it made."""
    calls = []
    real_lock = QuerySet.select_for_update
    real_now = timezone.now

    def lock(queryset, *args, **kwargs):
        calls.append("lock")
        return real_lock(queryset, *args, **kwargs)

    def now():
        calls.append("now")
        return real_now()

    with patch.object(QuerySet, "select_for_update", lock), patch(MOCK_NOW, side_effect=now):
        action()
    return calls


def unread_for(user, conversation):
    for item in services.list_conversations_for_user(user.pk):
        if item.conversation_id == conversation.pk:
            return item.unread_count
    raise AssertionError(f"conversation {conversation.pk} not listed for {user}")


# ── Presence ───────────────────────────────────────────────────────────────


class PresenceRegistryTest(SimpleTestCase):
    def setUp(self):
        self.registry = PresenceRegistry()

    def test_unknown_user_is_offline(self):
        self.assertFalse(self.registry.is_online("nobody"))

    def test_register_then_unregister(self):
        self.assertTrue(self.registry.register("u1", "c1"))
        self.assertTrue(self.registry.is_online("u1"))
        self.assertTrue(self.registry.unregister("u1"))
        self.assertFalse(self.registry.is_online("u1"))

    def test_other_users_do_not_affect_presence(self):
        self.registry.register("u1", "c1")
        self.registry.register("u2", "c2")
        self.registry.unregister("u2", "c2")
        self.assertTrue(self.registry.is_online("u1"))
        self.registry.unregister("u1")
        self.registry.register("u3", "c3")
        self.assertFalse(self.registry.is_online("u1"))

    def test_user_stays_online_until_last_connection_closes(self):
        self.assertTrue(self.registry.register("u1", "c1"))
        self.assertFalse(self.registry.register("u1", "c2"))
        self.assertFalse(self.registry.unregister("u1", "c1"))
        self.assertTrue(self.registry.is_online("u1"))
        self.assertTrue(self.registry.unregister("u1", "c2"))
        self.assertFalse(self.registry.is_online("u1"))

    def test_stale_disconnect_keeps_newer_connection(self):
        self.registry.register("u1", "old")
        self.registry.unregister("u1", "old")
        self.registry.register("u1", "new")
        self.assertFalse(self.registry.unregister("u1", "old"))
        self.assertTrue(self.registry.is_online("u1"))

    def test_unregister_unknown_user_is_noop(self):
        self.assertFalse(self.registry.unregister("ghost", "c1"))

    def test_online_users_and_count(self):
        self.registry.register("u1", "c1")
        self.registry.register("u2", "c2")
        self.registry.register("u2", "c3")
        self.assertCountEqual(self.registry.online_users(), ["u1", "u2"])
        self.assertEqual(self.registry.online_count(), 2)


# ── Conversation store ─────────────────────────────────────────────────────


class FindOrCreateConversationTest(TestCase):
    def setUp(self):
        self.a = UserFactory()
        self.b = UserFactory()

    def test_creates_conversation_with_both_participants(self):
        conv, created = services.find_or_create_conversation(self.a.pk, self.b.pk)
        self.assertTrue(created)
        participant_users = set(conv.participants.values_list("user_id", flat=True))
        self.assertEqual(participant_users, {self.a.pk, self.b.pk})

    def test_repeated_creation_in_either_order_returns_same_conversation(self):
        first, _ = services.find_or_create_conversation(self.a.pk, self.b.pk)
        second, created = services.find_or_create_conversation(self.b.pk, self.a.pk)
        third, _ = services.find_or_create_conversation(self.a.pk, self.b.pk)
        self.assertFalse(created)
        self.assertEqual(first.pk, second.pk)
        self.assertEqual(first.pk, third.pk)
        self.assertEqual(Conversation.objects.count(), 1)
        self.assertEqual(ConversationParticipant.objects.count(), 2)

    def test_self_conversation_rejected(self):
        with self.assertRaises(InvalidRequest):
            services.find_or_create_conversation(self.a.pk, self.a.pk)

    def test_losing_creation_race_returns_winner(self):
        winner, _ = services.find_or_create_conversation(self.a.pk, self.b.pk)
        with patch.object(services, "find_direct_conversation", side_effect=[None, winner]):
            conv, created = services.find_or_create_conversation(self.b.pk, self.a.pk)
        self.assertFalse(created)
        self.assertEqual(conv.pk, winner.pk)
        self.assertEqual(Conversation.objects.count(), 1)

    def test_conflict_surfaces_when_winner_cannot_be_read(self):
        services.find_or_create_conversation(self.a.pk, self.b.pk)
        with patch.object(services, "find_direct_conversation", return_value=None):
            with self.assertRaises(Conflict):
                services.find_or_create_conversation(self.a.pk, self.b.pk)

    def test_restores_soft_deleted_participation(self):
        conv, _ = services.find_or_create_conversation(self.a.pk, self.b.pk)
        services.delete_conversation(conv.pk, self.a.pk)
        services.find_or_create_conversation(self.a.pk, self.b.pk)
        self.assertFalse(conv.participants.get(user=self.a).is_deleted)


class AppendMessageTest(TestCase):
    def setUp(self):
        self.a = UserFactory()
        self.b = UserFactory()
        self.conv, _ = services.find_or_create_conversation(self.a.pk, self.b.pk)

    def test_persists_message_and_updates_last_message_at(self):
        message = services.append_message(self.conv.pk, self.a.pk, "hello")
        self.conv.refresh_from_db()
        self.assertIsNotNone(message.pk)
        self.assertEqual(message.sender, self.a)
        self.assertFalse(message.is_read)
        self.assertEqual(self.conv.last_message_at, message.sent_at)

    def test_non_participant_rejected_and_nothing_stored(self):
        outsider = UserFactory()
        with self.assertRaises(NotParticipant):
            services.append_message(self.conv.pk, outsider.pk, "hello")
        self.assertEqual(Message.objects.count(), 0)

    def test_sent_at_taken_under_conversation_lock(self):
        calls = lock_and_clock_calls(
            lambda: services.append_message(self.conv.pk, self.a.pk, "hello")
        )
        self.assertEqual(calls[:2], ["lock", "now"])

    def test_unknown_conversation_rejected(self):
        with self.assertRaises(NotParticipant):
            services.append_message(99999, self.a.pk, "hello")

    def test_blank_content_rejected(self):
        for content in ["", "   ", "\n\t"]:
            with self.assertRaises(InvalidRequest):
                services.append_message(self.conv.pk, self.a.pk, content)
        self.assertEqual(Message.objects.count(), 0)

    @override_settings(CHAT_MESSAGE_MAX_LENGTH=10)
    def test_oversized_content_rejected(self):
        services.append_message(self.conv.pk, self.a.pk, "x" * 10)
        with self.assertRaises(InvalidRequest):
            services.append_message(self.conv.pk, self.a.pk, "x" * 11)
        self.assertEqual(Message.objects.count(), 1)


class UnreadCountTest(TestCase):
    def setUp(self):
        self.a = UserFactory(email="a@x.com")
        self.b = UserFactory(email="b@x.com")
        self.t0 = timezone.now() - timedelta(hours=1)

    def at(self, minutes):
        return patch(MOCK_NOW, return_value=self.t0 + timedelta(minutes=minutes))

    def test_read_and_new_message_scenario(self):
        with self.at(0):
            conv, created = services.find_or_create_conversation(self.a.pk, self.b.pk)
        self.assertTrue(created)

        with self.at(1):
            first = services.append_message(conv.pk, self.a.pk, "hello")
        self.assertEqual(unread_for(self.b, conv), 1)
        self.assertEqual(unread_for(self.a, conv), 0)

        with self.at(2):
            services.mark_read(conv.pk, self.b.pk)
        self.assertEqual(unread_for(self.b, conv), 0)

        with self.at(3):
            second = services.append_message(conv.pk, self.a.pk, "hi again")
        self.assertGreater(second.sent_at, first.sent_at)
        self.assertGreater(second.pk, first.pk)
        self.assertEqual(unread_for(self.b, conv), 1)

        history = services.list_messages(conv.pk, self.b.pk)
        self.assertEqual([m.pk for m in history], [first.pk, second.pk])

    def test_null_last_read_counts_every_message_from_other(self):
        conv, _ = services.find_or_create_conversation(self.a.pk, self.b.pk)
        for _ in range(3):
            services.append_message(conv.pk, self.a.pk, fake.sentence())
        services.append_message(conv.pk, self.b.pk, "own message")
        self.assertEqual(unread_for(self.b, conv), 3)

    def test_mark_read_flags_other_participants_messages(self):
        conv, _ = services.find_or_create_conversation(self.a.pk, self.b.pk)
        with self.at(1):
            incoming = services.append_message(conv.pk, self.a.pk, "hello")
            own = services.append_message(conv.pk, self.b.pk, "hey")
        with self.at(2):
            services.mark_read(conv.pk, self.b.pk)
        incoming.refresh_from_db()
        own.refresh_from_db()
        self.assertTrue(incoming.is_read)
        self.assertFalse(own.is_read)

    def test_read_marker_taken_under_conversation_lock(self):
        conv, _ = services.find_or_create_conversation(self.a.pk, self.b.pk)
        calls = lock_and_clock_calls(lambda: services.mark_read(conv.pk, self.b.pk))
        self.assertEqual(calls[:2], ["lock", "now"])

    def test_read_marker_never_moves_back(self):
        conv, _ = services.find_or_create_conversation(self.a.pk, self.b.pk)
        with self.at(5):
            services.mark_read(conv.pk, self.b.pk)
        with self.at(2):
            participant = services.mark_read(conv.pk, self.b.pk)
        self.assertEqual(participant.last_read_at, self.t0 + timedelta(minutes=5))

    def test_mark_read_for_non_participant_is_not_found(self):
        conv, _ = services.find_or_create_conversation(self.a.pk, self.b.pk)
        with self.assertRaises(NotFound):
            services.mark_read(conv.pk, UserFactory().pk)

    def test_cleared_history_excluded_from_unread(self):
        conv, _ = services.find_or_create_conversation(self.a.pk, self.b.pk)
        with self.at(1):
            services.append_message(conv.pk, self.a.pk, "old")
        with self.at(2):
            services.clear_history(conv.pk, self.b.pk)
        with self.at(3):
            services.append_message(conv.pk, self.a.pk, "new")
        self.assertEqual(unread_for(self.b, conv), 1)


class ListConversationsTest(TestCase):
    def setUp(self):
        self.user = UserFactory()
        self.t0 = timezone.now() - timedelta(hours=1)

    def test_orders_by_latest_message_with_empty_conversations_last(self):
        quiet, _ = services.find_or_create_conversation(self.user.pk, UserFactory().pk)
        older, _ = services.find_or_create_conversation(self.user.pk, UserFactory().pk)
        newer, _ = services.find_or_create_conversation(self.user.pk, UserFactory().pk)
        with patch(MOCK_NOW, return_value=self.t0):
            services.append_message(older.pk, self.user.pk, "first")
        with patch(MOCK_NOW, return_value=self.t0 + timedelta(minutes=1)):
            services.append_message(newer.pk, self.user.pk, "second")

        items = services.list_conversations_for_user(self.user.pk)
        self.assertEqual([i.conversation_id for i in items], [newer.pk, older.pk, quiet.pk])
        self.assertEqual(items[0].last_message_content, "second")
        self.assertIsNone(items[2].last_message_sent_at)

    def test_annotates_other_participant(self):
        other = UserFactory()
        services.find_or_create_conversation(self.user.pk, other.pk)
        [item] = services.list_conversations_for_user(self.user.pk)
        self.assertEqual(item.other_participant.user, other)

    def test_global_conversation_pinned_first(self):
        conv, _ = services.find_or_create_conversation(self.user.pk, UserFactory().pk)
        services.append_message(conv.pk, self.user.pk, "hi")
        services.ensure_global_participant(self.user.pk)
        items = services.list_conversations_for_user(self.user.pk)
        self.assertTrue(items[0].conversation.is_global)
        self.assertIsNone(items[0].other_participant)

    def test_only_one_global_conversation_can_exist(self):
        services.ensure_global_participant(self.user.pk)
        with self.assertRaises(IntegrityError):
            Conversation.objects.create(is_global=True)

    def test_losing_global_creation_race_joins_existing(self):
        existing = services.ensure_global_participant(UserFactory().pk)
        with patch.object(services, "find_global_conversation", side_effect=[None, existing]):
            conversation = services.ensure_global_participant(self.user.pk)
        self.assertEqual(conversation.pk, existing.pk)
        self.assertEqual(Conversation.objects.filter(is_global=True).count(), 1)
        [item] = services.list_conversations_for_user(self.user.pk)
        self.assertEqual(item.conversation_id, existing.pk)

    def test_ensure_global_participant_is_idempotent(self):
        first = services.ensure_global_participant(self.user.pk)
        second = services.ensure_global_participant(self.user.pk)
        self.assertEqual(first.pk, second.pk)
        self.assertEqual(Conversation.objects.filter(is_global=True).count(), 1)
        self.assertEqual(first.participants.filter(user=self.user).count(), 1)

    def test_soft_deleted_conversation_hidden(self):
        conv, _ = services.find_or_create_conversation(self.user.pk, UserFactory().pk)
        services.delete_conversation(conv.pk, self.user.pk)
        self.assertEqual(services.list_conversations_for_user(self.user.pk), [])


class ListMessagesTest(TestCase):
    def setUp(self):
        self.a = UserFactory()
        self.b = UserFactory()
        self.conv, _ = services.find_or_create_conversation(self.a.pk, self.b.pk)
        self.messages = [
            services.append_message(self.conv.pk, self.a.pk, f"message {i}") for i in range(5)
        ]

    def test_returns_ascending_history(self):
        history = services.list_messages(self.conv.pk, self.b.pk)
        self.assertEqual([m.pk for m in history], [m.pk for m in self.messages])

    def test_pages_backwards_from_cursor(self):
        page = services.list_messages(
            self.conv.pk, self.b.pk, before_message_id=self.messages[3].pk, count=2
        )
        self.assertEqual([m.pk for m in page], [self.messages[1].pk, self.messages[2].pk])

    def test_equal_timestamps_ordered_by_id(self):
        sent_at = timezone.now()
        tied = [
            MessageFactory(conversation=self.conv, sender=self.a, sent_at=sent_at) for _ in range(3)
        ]
        history = services.list_messages(self.conv.pk, self.b.pk, count=3)
        self.assertEqual([m.pk for m in history], [m.pk for m in tied])
        page = services.list_messages(self.conv.pk, self.b.pk, before_message_id=tied[2].pk, count=1)
        self.assertEqual([m.pk for m in page], [tied[1].pk])

    def test_history_is_stable_across_fetches(self):
        first = services.list_messages(self.conv.pk, self.a.pk)
        services.append_message(self.conv.pk, self.b.pk, "late")
        second = services.list_messages(self.conv.pk, self.a.pk)
        self.assertEqual([m.pk for m in second[:-1]], [m.pk for m in first])

    def test_cursor_from_other_conversation_rejected(self):
        other_conv, _ = services.find_or_create_conversation(self.a.pk, UserFactory().pk)
        foreign = services.append_message(other_conv.pk, self.a.pk, "elsewhere")
        with self.assertRaises(InvalidRequest):
            services.list_messages(self.conv.pk, self.a.pk, before_message_id=foreign.pk)

    def test_count_out_of_range_rejected(self):
        with self.assertRaises(InvalidRequest):
            services.list_messages(self.conv.pk, self.a.pk, count=0)

    def test_non_participant_forbidden(self):
        with self.assertRaises(NotParticipant):
            services.list_messages(self.conv.pk, UserFactory().pk)

    def test_missing_conversation_not_found(self):
        with self.assertRaises(NotFound):
            services.list_messages(99999, self.a.pk)


class DeleteMessageTest(TestCase):
    def setUp(self):
        self.a = UserFactory()
        self.b = UserFactory()
        conv, _ = services.find_or_create_conversation(self.a.pk, self.b.pk)
        self.message = services.append_message(conv.pk, self.a.pk, "secret")

    def test_sender_can_delete(self):
        services.delete_message(self.message.pk, self.a.pk)
        self.message.refresh_from_db()
        self.assertTrue(self.message.is_deleted)
        self.assertEqual(self.message.content, "")

    def test_other_user_forbidden(self):
        with self.assertRaises(Forbidden):
            services.delete_message(self.message.pk, self.b.pk)

    def test_delete_twice_rejected(self):
        services.delete_message(self.message.pk, self.a.pk)
        with self.assertRaises(InvalidRequest):
            services.delete_message(self.message.pk, self.a.pk)


# ── REST API ───────────────────────────────────────────────────────────────


class ConversationApiTest(TestCase):
    def setUp(self):
        presence.clear()
        self.user = UserFactory()
        self.other = UserFactory(email="b@x.com")
        self.client = APIClient()
        self.client.force_authenticate(self.user)

    def tearDown(self):
        presence.clear()

    def test_unauthenticated_returns_401(self):
        resp = APIClient().get(reverse("conversations"))
        self.assertEqual(resp.status_code, 401)

    def test_bearer_token_accepted(self):
        token = Token.objects.create(user=self.user)
        client = APIClient()
        client.credentials(HTTP_AUTHORIZATION=f"Bearer {token.key}")
        self.assertEqual(client.get(reverse("conversations")).status_code, 200)

    def test_create_then_fetch_existing(self):
        resp = self.client.post(reverse("conversations"), {"participant_email": "b@x.com"}, format="json")
        self.assertEqual(resp.status_code, 201)
        conversation_id = resp.json()["conversation_id"]

        resp = self.client.post(reverse("conversations"), {"participant_email": "B@X.com"}, format="json")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["conversation_id"], conversation_id)

    def test_create_with_unknown_email_returns_404(self):
        resp = self.client.post(reverse("conversations"), {"participant_email": "nobody@x.com"}, format="json")
        self.assertEqual(resp.status_code, 404)

    def test_create_with_self_returns_400(self):
        resp = self.client.post(reverse("conversations"), {"participant_email": self.user.email}, format="json")
        self.assertEqual(resp.status_code, 400)

    def test_list_includes_unread_and_presence(self):
        conv, _ = services.find_or_create_conversation(self.user.pk, self.other.pk)
        services.append_message(conv.pk, self.other.pk, "hello")
        presence.register(self.other.pk, "conn-1")

        resp = self.client.get(reverse("conversations"))
        self.assertEqual(resp.status_code, 200)
        items = resp.json()
        self.assertTrue(items[0]["is_global"])
        direct = next(i for i in items if i["id"] == conv.pk)
        self.assertEqual(direct["unread_count"], 1)
        self.assertTrue(direct["is_other_user_online"])
        self.assertEqual(direct["other_user_id"], self.other.pk)
        self.assertEqual(direct["last_message"], "hello")

    def test_detail_resolves_participant_once(self):
        conv, _ = services.find_or_create_conversation(self.user.pk, self.other.pk)
        with patch.object(
            services, "require_participant", wraps=services.require_participant
        ) as mock_require:
            resp = self.client.get(reverse("conversation", kwargs={"id": conv.pk}))
        self.assertEqual(resp.status_code, 200)
        mock_require.assert_called_once_with(conv.pk, self.user.pk)

    def test_detail_for_participant(self):
        conv, _ = services.find_or_create_conversation(self.user.pk, self.other.pk)
        services.append_message(conv.pk, self.user.pk, "one")
        services.append_message(conv.pk, self.other.pk, "two")
        services.set_blocked(conv.pk, self.other.pk, True)

        resp = self.client.get(reverse("conversation", kwargs={"id": conv.pk}))
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual([m["content"] for m in body["messages"]], ["one", "two"])
        self.assertEqual(len(body["participants"]), 2)
        self.assertFalse(body["is_blocked"])
        self.assertTrue(body["is_blocked_by_other"])

    def test_detail_for_non_participant_returns_403(self):
        conv, _ = services.find_or_create_conversation(self.other.pk, UserFactory().pk)
        resp = self.client.get(reverse("conversation", kwargs={"id": conv.pk}))
        self.assertEqual(resp.status_code, 403)

    def test_detail_for_missing_conversation_returns_404(self):
        resp = self.client.get(reverse("conversation", kwargs={"id": 99999}))
        self.assertEqual(resp.status_code, 404)

    def test_mark_read(self):
        conv, _ = services.find_or_create_conversation(self.user.pk, self.other.pk)
        services.append_message(conv.pk, self.other.pk, "hello")
        resp = self.client.put(reverse("conversation_read", kwargs={"id": conv.pk}))
        self.assertEqual(resp.status_code, 204)
        self.assertEqual(unread_for(self.user, conv), 0)

    def test_mark_read_for_non_participant_returns_404(self):
        conv, _ = services.find_or_create_conversation(self.other.pk, UserFactory().pk)
        resp = self.client.put(reverse("conversation_read", kwargs={"id": conv.pk}))
        self.assertEqual(resp.status_code, 404)

    def test_message_page(self):
        conv, _ = services.find_or_create_conversation(self.user.pk, self.other.pk)
        sent = [services.append_message(conv.pk, self.other.pk, str(i)) for i in range(4)]
        resp = self.client.get(
            reverse("conversation_messages", kwargs={"id": conv.pk}),
            {"before_message_id": sent[3].pk, "count": 2},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual([m["id"] for m in resp.json()], [sent[1].pk, sent[2].pk])

    def test_malformed_cursor_returns_400(self):
        conv, _ = services.find_or_create_conversation(self.user.pk, self.other.pk)
        resp = self.client.get(
            reverse("conversation_messages", kwargs={"id": conv.pk}), {"before_message_id": "abc"}
        )
        self.assertEqual(resp.status_code, 400)

    def test_clear_history(self):
        conv, _ = services.find_or_create_conversation(self.user.pk, self.other.pk)
        services.append_message(conv.pk, self.other.pk, "old")
        resp = self.client.delete(reverse("conversation_messages", kwargs={"id": conv.pk}))
        self.assertEqual(resp.status_code, 200)
        resp = self.client.get(reverse("conversation_messages", kwargs={"id": conv.pk}))
        self.assertEqual(resp.json(), [])

    def test_block_and_unblock(self):
        conv, _ = services.find_or_create_conversation(self.user.pk, self.other.pk)
        self.client.post(reverse("conversation_block", kwargs={"id": conv.pk}))
        self.assertTrue(conv.participants.get(user=self.user).is_blocked)
        self.client.post(reverse("conversation_unblock", kwargs={"id": conv.pk}))
        self.assertFalse(conv.participants.get(user=self.user).is_blocked)

    def test_delete_message_of_other_user_returns_403(self):
        conv, _ = services.find_or_create_conversation(self.user.pk, self.other.pk)
        message = services.append_message(conv.pk, self.other.pk, "mine")
        resp = self.client.delete(reverse("delete_message", kwargs={"message_id": message.pk}))
        self.assertEqual(resp.status_code, 403)


class SearchUsersApiTest(TestCase):
    def setUp(self):
        self.user = UserFactory(name="Alice Smoke", email="alice@example.com")
        self.client = APIClient()
        self.client.force_authenticate(self.user)

    def test_matches_name_or_email_excluding_self(self):
        by_name = UserFactory(name="Bob Smoke", email="bob@example.com")
        by_email = UserFactory(name="Carol", email="carol.smoke@example.com")
        UserFactory(name="Dave", email="dave@example.com")

        resp = self.client.get(reverse("search_users"), {"query": "smoke"})
        self.assertEqual(resp.status_code, 200)
        ids = {u["id"] for u in resp.json()}
        self.assertEqual(ids, {by_name.pk, by_email.pk})

    def test_results_capped(self):
        for i in range(12):
            UserFactory(name=f"Match {i}")
        resp = self.client.get(reverse("search_users"), {"query": "match"})
        self.assertEqual(len(resp.json()), 10)

    def test_empty_query_returns_400(self):
        resp = self.client.get(reverse("search_users"), {"query": "  "})
        self.assertEqual(resp.status_code, 400)


# ── Realtime hub ───────────────────────────────────────────────────────────


application = TokenAuthMiddleware(URLRouter(websocket_urlpatterns))


async def receive_json(communicator):
    return json.loads(await communicator.receive_from(timeout=2))


async def receive_until(communicator, predicate):
    """Read frames until one matches, returning (match, skipped frames)."""
    skipped = []
    while True:
        frame = await receive_json(communicator)
        if predicate(frame):
            return frame, skipped
        skipped.append(frame)


def is_completion(frame):
    return frame["type"] == "completion"


def is_event(name):
    return lambda frame: frame["type"] == "event" and frame["event"] == name


class ChatConsumerTest(TransactionTestCase):
    def setUp(self):
        presence.clear()
        async_to_sync(get_channel_layer().flush)()
        self.a = UserFactory()
        self.b = UserFactory()
        self.token_a = Token.objects.create(user=self.a).key
        self.token_b = Token.objects.create(user=self.b).key
        self.conv, _ = services.find_or_create_conversation(self.a.pk, self.b.pk)

    def tearDown(self):
        presence.clear()

    async def open(self, token):
        communicator = WebsocketCommunicator(application, f"/ws/chat/?access_token={token}")
        connected, _ = await communicator.connect()
        self.assertTrue(connected)
        return communicator

    async def invoke(self, communicator, target, *arguments):
        await communicator.send_to(text_data=json.dumps({
            "invocation_id": target,
            "target": target,
            "arguments": list(arguments),
        }))
        return await receive_until(communicator, is_completion)

    async def test_rejects_connection_without_token(self):
        communicator = WebsocketCommunicator(application, "/ws/chat/")
        connected, _ = await communicator.connect()
        self.assertFalse(connected)

    async def test_rejects_connection_with_bad_token(self):
        communicator = WebsocketCommunicator(application, "/ws/chat/?access_token=nope")
        connected, _ = await communicator.connect()
        self.assertFalse(connected)

    async def test_presence_events(self):
        alice = await self.open(self.token_a)
        self.assertTrue(presence.is_online(self.a.pk))

        bob = await self.open(self.token_b)
        frame, _ = await receive_until(alice, is_event("UserOnline"))
        self.assertEqual(frame["data"], self.b.pk)

        await bob.disconnect()
        frame, _ = await receive_until(alice, is_event("UserOffline"))
        self.assertEqual(frame["data"], self.b.pk)
        self.assertFalse(presence.is_online(self.b.pk))

        await alice.disconnect()
        self.assertFalse(presence.is_online(self.a.pk))

    async def test_disconnect_records_last_seen(self):
        alice = await self.open(self.token_a)
        await alice.disconnect()
        user = await database_sync_to_async(User.objects.get)(pk=self.a.pk)
        self.assertIsNotNone(user.last_seen)

    async def test_disconnect_releases_presence_when_channel_layer_fails(self):
        bob = await self.open(self.token_b)
        alice = await self.open(self.token_a)
        await self.invoke(alice, "JoinConversation", self.conv.pk)

        failing = AsyncMock(side_effect=ConnectionError("redis down"))
        with patch.object(get_channel_layer(), "group_discard", failing):
            with self.assertLogs("message.consumers", level="WARNING"):
                await alice.disconnect()

        self.assertEqual(failing.await_count, 3)
        self.assertFalse(presence.is_online(self.a.pk))
        frame, _ = await receive_until(bob, is_event("UserOffline"))
        self.assertEqual(frame["data"], self.a.pk)
        user = await database_sync_to_async(User.objects.get)(pk=self.a.pk)
        self.assertIsNotNone(user.last_seen)
        await bob.disconnect()

    async def test_second_connection_keeps_user_online(self):
        first = await self.open(self.token_a)
        second = await self.open(self.token_a)
        await first.disconnect()
        self.assertTrue(presence.is_online(self.a.pk))
        await second.disconnect()
        self.assertFalse(presence.is_online(self.a.pk))

    async def test_send_message_reaches_all_participants(self):
        alice = await self.open(self.token_a)
        bob = await self.open(self.token_b)

        completion, skipped = await self.invoke(alice, "SendMessage", self.conv.pk, "hello")
        self.assertNotIn("error", completion)
        self.assertEqual(completion["result"]["content"], "hello")
        self.assertEqual(completion["result"]["sender_id"], self.a.pk)

        echoed = [f for f in skipped if is_event("ReceiveMessage")(f)]
        if not echoed:
            frame, _ = await receive_until(alice, is_event("ReceiveMessage"))
            echoed.append(frame)
        self.assertEqual(echoed[0]["data"]["id"], completion["result"]["id"])

        frame, _ = await receive_until(bob, is_event("ReceiveMessage"))
        self.assertEqual(frame["data"]["id"], completion["result"]["id"])
        self.assertEqual(frame["data"]["conversation_id"], self.conv.pk)

        count = await database_sync_to_async(Message.objects.filter(conversation=self.conv).count)()
        self.assertEqual(count, 1)

        await alice.disconnect()
        await bob.disconnect()

    async def test_send_message_delivered_without_joining_room(self):
        alice = await self.open(self.token_a)
        bob = await self.open(self.token_b)
        await self.invoke(bob, "JoinConversation", 12345)

        await self.invoke(alice, "SendMessage", self.conv.pk, "hello")
        frame, _ = await receive_until(bob, is_event("ReceiveMessage"))
        self.assertEqual(frame["data"]["content"], "hello")

        await alice.disconnect()
        await bob.disconnect()

    async def test_send_message_persists_when_recipient_offline(self):
        alice = await self.open(self.token_a)
        completion, _ = await self.invoke(alice, "SendMessage", self.conv.pk, "are you there?")
        self.assertIn("result", completion)
        history = await database_sync_to_async(services.list_messages)(self.conv.pk, self.b.pk)
        self.assertEqual([m.content for m in history], ["are you there?"])
        await alice.disconnect()

    async def test_non_participant_send_reports_error(self):
        outsider = await database_sync_to_async(UserFactory)()
        token = await database_sync_to_async(Token.objects.create)(user=outsider)
        intruder = await self.open(token.key)

        completion, _ = await self.invoke(intruder, "SendMessage", self.conv.pk, "hi")
        self.assertEqual(completion["error"]["code"], "not_participant")
        count = await database_sync_to_async(Message.objects.count)()
        self.assertEqual(count, 0)

        await intruder.disconnect()

    async def test_empty_message_reports_error(self):
        alice = await self.open(self.token_a)
        completion, _ = await self.invoke(alice, "SendMessage", self.conv.pk, "   ")
        self.assertEqual(completion["error"]["code"], "invalid_request")
        await alice.disconnect()

    async def test_fractional_conversation_id_rejected(self):
        alice = await self.open(self.token_a)
        for conversation_id in [self.conv.pk + 0.9, float(self.conv.pk), True, "1.5", None]:
            completion, _ = await self.invoke(alice, "SendMessage", conversation_id, "hi")
            self.assertEqual(completion["error"]["code"], "invalid_request")
        count = await database_sync_to_async(Message.objects.count)()
        self.assertEqual(count, 0)

        completion, _ = await self.invoke(alice, "SendMessage", str(self.conv.pk), "hi")
        self.assertEqual(completion["result"]["conversation_id"], self.conv.pk)
        await alice.disconnect()

    async def test_unknown_target_and_bad_arguments(self):
        alice = await self.open(self.token_a)
        completion, _ = await self.invoke(alice, "DropTables")
        self.assertEqual(completion["error"]["code"], "invalid_request")
        completion, _ = await self.invoke(alice, "SendMessage", self.conv.pk)
        self.assertEqual(completion["error"]["code"], "invalid_request")
        await alice.disconnect()

    async def test_mark_as_read_notifies_room(self):
        alice = await self.open(self.token_a)
        bob = await self.open(self.token_b)
        await self.invoke(alice, "JoinConversation", self.conv.pk)
        await self.invoke(alice, "SendMessage", self.conv.pk, "hello")

        completion, _ = await self.invoke(bob, "MarkAsRead", self.conv.pk)
        self.assertIsNone(completion["result"])

        frame, _ = await receive_until(alice, is_event("MessagesRead"))
        self.assertEqual(frame["data"]["user_id"], self.b.pk)
        self.assertEqual(frame["data"]["conversation_id"], self.conv.pk)

        participant = await database_sync_to_async(services.get_participant)(self.conv.pk, self.b.pk)
        self.assertIsNotNone(participant.last_read_at)

        await alice.disconnect()
        await bob.disconnect()

    async def test_mark_as_read_for_foreign_conversation_is_silent(self):
        alice = await self.open(self.token_a)
        completion, _ = await self.invoke(alice, "MarkAsRead", 99999)
        self.assertNotIn("error", completion)
        await alice.disconnect()

    async def test_get_online_users(self):
        alice = await self.open(self.token_a)
        bob = await self.open(self.token_b)
        completion, _ = await self.invoke(alice, "GetOnlineUsers")
        self.assertCountEqual(completion["result"], [self.a.pk, self.b.pk])
        await alice.disconnect()
        await bob.disconnect()

    async def test_global_message_reaches_every_connection(self):
        outsider = await database_sync_to_async(UserFactory)()
        token = await database_sync_to_async(Token.objects.create)(user=outsider)
        global_conv = await database_sync_to_async(services.ensure_global_participant)(self.a.pk)

        alice = await self.open(self.token_a)
        watcher = await self.open(token.key)
        await self.invoke(alice, "SendMessage", global_conv.pk, "hello everyone")

        frame, _ = await receive_until(watcher, is_event("ReceiveMessage"))
        self.assertEqual(frame["data"]["content"], "hello everyone")

        await alice.disconnect()
        await watcher.disconnect()
