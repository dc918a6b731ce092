import factory
from asgiref.sync import async_to_sync
from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from django.test import SimpleTestCase, TestCase, TransactionTestCase
from django.urls import reverse
from faker import Faker
from rest_framework.authtoken.models import Token
from rest_framework.test import APIClient

from .authentication import TokenAuthMiddleware, get_user_for_token, token_from_scope

User = get_user_model()
fake = Faker()


class UserFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = User

    username = factory.LazyFunction(lambda: fake.unique.user_name())
    email = factory.LazyFunction(lambda: fake.unique.email())
    name = factory.LazyFunction(fake.name)
    password = factory.PostGenerationMethodCall("set_password", "testpass123")


class UserModelTest(TestCase):
    def test_display_name_falls_back_to_email(self):
        self.assertEqual(UserFactory(name="Ann").display_name, "Ann")
        self.assertEqual(UserFactory(name="", email="ann@x.com").display_name, "ann@x.com")

    def test_find_by_email_ignores_case_and_whitespace(self):
        user = UserFactory(email="ann@example.com")
        self.assertEqual(User.objects.find_by_email("  ANN@example.com "), user)
        self.assertIsNone(User.objects.find_by_email("bob@example.com"))

    def test_search_matches_name_or_email(self):
        ann = UserFactory(name="Ann Lee", email="ann@example.com")
        lee = UserFactory(name="Bob", email="lee.bob@example.com")
        UserFactory(name="Carl", email="carl@example.com")
        self.assertEqual(list(User.objects.search("LEE")), [ann, lee])

    def test_search_excludes_given_user(self):
        ann = UserFactory(name="Ann Lee")
        self.assertEqual(list(User.objects.search("lee", exclude=ann)), [])


class TokenEndpointTest(TestCase):
    def test_issues_token_for_valid_credentials(self):
        user = UserFactory(username="ann")
        resp = APIClient().post(reverse("token"), {"username": "ann", "password": "testpass123"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["token"], Token.objects.get(user=user).key)

    def test_rejects_bad_password(self):
        UserFactory(username="ann")
        resp = APIClient().post(reverse("token"), {"username": "ann", "password": "wrong"})
        self.assertEqual(resp.status_code, 400)


class TokenFromScopeTest(SimpleTestCase):
    def test_query_string(self):
        scope = {"query_string": b"access_token=abc123&x=1", "headers": []}
        self.assertEqual(token_from_scope(scope), "abc123")

    def test_authorization_header(self):
        scope = {"query_string": b"", "headers": [(b"authorization", b"Bearer abc123")]}
        self.assertEqual(token_from_scope(scope), "abc123")

    def test_other_scheme_ignored(self):
        scope = {"query_string": b"", "headers": [(b"authorization", b"Basic abc123")]}
        self.assertIsNone(token_from_scope(scope))

    def test_missing(self):
        self.assertIsNone(token_from_scope({}))


class TokenAuthMiddlewareTest(TransactionTestCase):
    def setUp(self):
        self.user = UserFactory()
        self.token = Token.objects.create(user=self.user)

    def resolve(self, query_string):
        seen = {}

        async def inner(scope, receive, send):
            seen["user"] = scope["user"]

        async_to_sync(TokenAuthMiddleware(inner))(
            {"type": "websocket", "query_string": query_string, "headers": []}, None, None
        )
        return seen["user"]

    def test_valid_token_resolves_user(self):
        self.assertEqual(self.resolve(f"access_token={self.token.key}".encode()), self.user)

    def test_unknown_token_is_anonymous(self):
        self.assertIsInstance(self.resolve(b"access_token=nope"), AnonymousUser)

    def test_no_token_is_anonymous(self):
        self.assertIsInstance(self.resolve(b""), AnonymousUser)

    def test_inactive_user_is_anonymous(self):
        self.user.is_active = False
        self.user.save()
        self.assertIsInstance(async_to_sync(get_user_for_token)(self.token.key), AnonymousUser)
