from datetime import timedelta
from unittest.mock import patch

import factory
from django.contrib.auth import get_user_model
from django.db import DatabaseError
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone
from faker import Faker
from rest_framework.exceptions import NotFound, ValidationError
from rest_framework.test import APIClient

from . import services, tasks
from .models import Marathon, MarathonParticipant

User = get_user_model()
fake = Faker()


class UserFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = User

    username = factory.LazyFunction(lambda: fake.unique.user_name())
    email = factory.LazyFunction(lambda: fake.unique.email())
    name = factory.LazyFunction(fake.name)
    password = factory.PostGenerationMethodCall("set_password", "testpass123")


class StaffFactory(UserFactory):
    is_staff = True


class MarathonFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Marathon

    title = factory.LazyFunction(lambda: fake.sentence(nb_words=3))
    description = factory.LazyFunction(fake.paragraph)
    start_date = factory.LazyFunction(lambda: timezone.now() + timedelta(days=1))
    end_date = factory.LazyFunction(lambda: timezone.now() + timedelta(days=30))


class EndedMarathonFactory(MarathonFactory):
    start_date = factory.LazyFunction(lambda: timezone.now() - timedelta(days=30))
    end_date = factory.LazyFunction(lambda: timezone.now() - timedelta(days=1))


class MarathonParticipantFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = MarathonParticipant

    marathon = factory.SubFactory(MarathonFactory)
    user = factory.SubFactory(UserFactory)


class CompleteEndedMarathonsTest(TestCase):
    def test_completes_ended_marathon_and_active_participants(self):
        marathon = EndedMarathonFactory()
        active = MarathonParticipantFactory.create_batch(2, marathon=marathon)
        dropped = MarathonParticipantFactory(
            marathon=marathon, status=MarathonParticipant.Status.DISQUALIFIED
        )

        result = services.complete_ended_marathons()

        marathon.refresh_from_db()
        self.assertFalse(marathon.is_active)
        self.assertEqual(result.marathons, 1)
        self.assertEqual(result.participants, 2)
        for participant in active:
            participant.refresh_from_db()
            self.assertEqual(participant.status, MarathonParticipant.Status.COMPLETED)
        dropped.refresh_from_db()
        self.assertEqual(dropped.status, MarathonParticipant.Status.DISQUALIFIED)

    def test_running_marathon_untouched(self):
        marathon = MarathonFactory(start_date=timezone.now() - timedelta(days=1))
        participant = MarathonParticipantFactory(marathon=marathon)

        result = services.complete_ended_marathons()

        marathon.refresh_from_db()
        participant.refresh_from_db()
        self.assertTrue(marathon.is_active)
        self.assertEqual(participant.status, MarathonParticipant.Status.ACTIVE)
        self.assertEqual(result.marathons, 0)

    def test_second_sweep_is_noop(self):
        marathon = EndedMarathonFactory()
        MarathonParticipantFactory(marathon=marathon)

        services.complete_ended_marathons()
        result = services.complete_ended_marathons()

        self.assertEqual(result.marathons, 0)
        self.assertEqual(result.participants, 0)

    def test_sweep_uses_given_time(self):
        marathon = MarathonFactory()
        services.complete_ended_marathons(now=marathon.end_date + timedelta(seconds=1))
        marathon.refresh_from_db()
        self.assertFalse(marathon.is_active)

    def test_logs_progress(self):
        EndedMarathonFactory(title="Spring Quit")
        with self.assertLogs("marathon.services", level="INFO") as logs:
            services.complete_ended_marathons()
        self.assertTrue(any("Spring Quit" in line for line in logs.output))


class CompleteEndedMarathonsTaskTest(TestCase):
    def test_returns_counts(self):
        marathon = EndedMarathonFactory()
        MarathonParticipantFactory(marathon=marathon)
        self.assertEqual(tasks.complete_ended_marathons(), {"marathons": 1, "participants": 1})

    @patch("marathon.tasks.services.complete_ended_marathons", side_effect=DatabaseError("gone"))
    def test_failure_is_logged_not_raised(self, mock_sweep):
        with self.assertLogs("marathon.tasks", level="ERROR") as logs:
            self.assertIsNone(tasks.complete_ended_marathons())
        mock_sweep.assert_called_once()
        self.assertIn("Error completing marathons", logs.output[0])


class JoinMarathonTest(TestCase):
    def setUp(self):
        self.user = UserFactory()

    def test_join_upcoming(self):
        marathon = MarathonFactory()
        participant = services.join_marathon(marathon.pk, self.user.pk)
        self.assertEqual(participant.status, MarathonParticipant.Status.ACTIVE)

    def test_join_twice_rejected(self):
        marathon = MarathonFactory()
        services.join_marathon(marathon.pk, self.user.pk)
        with self.assertRaises(ValidationError):
            services.join_marathon(marathon.pk, self.user.pk)
        self.assertEqual(marathon.participants.count(), 1)

    def test_join_started_rejected(self):
        marathon = MarathonFactory(start_date=timezone.now() - timedelta(hours=1))
        with self.assertRaises(ValidationError):
            services.join_marathon(marathon.pk, self.user.pk)

    def test_join_missing(self):
        with self.assertRaises(NotFound):
            services.join_marathon(99999, self.user.pk)


class MarathonApiTest(TestCase):
    def setUp(self):
        self.user = UserFactory()
        self.staff = StaffFactory()
        self.client = APIClient()
        self.client.force_authenticate(self.user)

    def test_list_upcoming_with_join_state(self):
        joined = MarathonFactory()
        other = MarathonFactory(start_date=timezone.now() + timedelta(days=2))
        EndedMarathonFactory()
        MarathonParticipantFactory(marathon=joined, user=self.user)
        MarathonParticipantFactory(marathon=joined)

        resp = self.client.get(reverse("marathons"))
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual([m["id"] for m in body], [joined.pk, other.pk])
        self.assertEqual(body[0]["participants_count"], 2)
        self.assertTrue(body[0]["is_joined"])
        self.assertEqual(body[0]["user_status"], "active")
        self.assertFalse(body[1]["is_joined"])
        self.assertIsNone(body[1]["user_status"])

    def test_create_requires_staff(self):
        data = {
            "title": "Quit in May",
            "start_date": (timezone.now() + timedelta(days=1)).isoformat(),
            "end_date": (timezone.now() + timedelta(days=31)).isoformat(),
        }
        resp = self.client.post(reverse("marathons"), data, format="json")
        self.assertEqual(resp.status_code, 403)

        self.client.force_authenticate(self.staff)
        resp = self.client.post(reverse("marathons"), data, format="json")
        self.assertEqual(resp.status_code, 201)
        self.assertTrue(Marathon.objects.filter(title="Quit in May").exists())

    def test_create_rejects_end_before_start(self):
        self.client.force_authenticate(self.staff)
        data = {
            "title": "Backwards",
            "start_date": (timezone.now() + timedelta(days=5)).isoformat(),
            "end_date": (timezone.now() + timedelta(days=1)).isoformat(),
        }
        resp = self.client.post(reverse("marathons"), data, format="json")
        self.assertEqual(resp.status_code, 400)

    def test_join(self):
        marathon = MarathonFactory()
        resp = self.client.post(reverse("marathon_join", kwargs={"id": marathon.pk}))
        self.assertEqual(resp.status_code, 200)
        resp = self.client.post(reverse("marathon_join", kwargs={"id": marathon.pk}))
        self.assertEqual(resp.status_code, 400)

    def test_complete_ended_requires_staff(self):
        EndedMarathonFactory()
        resp = self.client.post(reverse("marathon_complete_ended"))
        self.assertEqual(resp.status_code, 403)

    def test_complete_ended(self):
        marathon = EndedMarathonFactory()
        MarathonParticipantFactory.create_batch(3, marathon=marathon)
        self.client.force_authenticate(self.staff)

        resp = self.client.post(reverse("marathon_complete_ended"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["marathons_completed"], 1)
        self.assertEqual(resp.json()["participants_completed"], 3)
