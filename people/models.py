from django.contrib.auth.models import AbstractUser, UserManager as BaseUserManager
from django.db import models
from django.db.models import Q


class UserManager(BaseUserManager):
    def search(self, term: str, exclude=None):
        """Case-insensitive substring match on email or display name."""
        users = self.filter(Q(email__icontains=term) | Q(name__icontains=term))
        if exclude is not None:
            users = users.exclude(pk=exclude.pk)
        return users.order_by("name", "email")

    def find_by_email(self, email: str):
        return self.filter(email__iexact=email.strip()).first()


class User(AbstractUser):
    email = models.EmailField(unique=True)
    name = models.CharField(max_length=100, blank=True)
    last_seen = models.DateTimeField(null=True, blank=True)

    objects = UserManager()

    @property
    def display_name(self):
        return self.name or self.email or "Unknown"
