from django.db import models
from django.conf import settings


class Marathon(models.Model):
    title = models.CharField(max_length=200)
    description = models.TextField(max_length=1000, blank=True)
    start_date = models.DateTimeField()
    end_date = models.DateTimeField()
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["start_date"]

    def __str__(self):
        return self.title


class MarathonParticipant(models.Model):
    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        DISQUALIFIED = "disqualified", "Disqualified"
        COMPLETED = "completed", "Completed"

    marathon = models.ForeignKey(
        Marathon,
        on_delete=models.CASCADE,
        related_name="participants"
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="marathons"
    )
    joined_at = models.DateTimeField(auto_now_add=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.ACTIVE)

    class Meta:
        unique_together = ("marathon", "user")
