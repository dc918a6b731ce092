"""
Marathon lifecycle, including the sweep that closes marathons whose end
date has passed.

The sweep is run hourly by Celery beat (``marathon.tasks``) and on demand
by staff through the API. Each marathon is claimed with a conditional
update on ``is_active``, so overlapping sweeps complete it exactly once and
a marathon that is already closed is left alone.
"""
import logging
from dataclasses import dataclass

from django.db import IntegrityError, transaction
from django.db.models import Count
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from .models import Marathon, MarathonParticipant

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    marathons: int = 0
    participants: int = 0


def complete_ended_marathons(now=None) -> SweepResult:
    now = now or timezone.now()
    result = SweepResult()

    ended = list(
        Marathon.objects.filter(is_active=True, end_date__lt=now).values_list("id", "title")
    )
    if not ended:
        logger.info("No ended marathons to complete")
        return result

    logger.info("Found %d ended marathons to complete", len(ended))
    for marathon_id, title in ended:
        with transaction.atomic():
            claimed = Marathon.objects.filter(pk=marathon_id, is_active=True).update(is_active=False)
            if not claimed:
                continue
            completed = MarathonParticipant.objects.filter(
                marathon_id=marathon_id, status=MarathonParticipant.Status.ACTIVE
            ).update(status=MarathonParticipant.Status.COMPLETED)

        result.marathons += 1
        result.participants += completed
        logger.info(
            "Completed marathon '%s' (ID: %s), marked %d participants as completed",
            title, marathon_id, completed,
        )

    logger.info("Successfully completed %d marathons", result.marathons)
    return result


def upcoming_marathons():
    return (
        Marathon.objects.filter(is_active=True, end_date__gt=timezone.now())
        .annotate(participants_count=Count("participants"))
        .prefetch_related("participants")
        .order_by("start_date")
    )


def join_marathon(marathon_id: int, user_id: int) -> MarathonParticipant:
    marathon = Marathon.objects.filter(pk=marathon_id).first()
    if marathon is None:
        raise NotFound("Marathon not found.")
    if marathon.start_date <= timezone.now():
        raise ValidationError("Marathon has already started.")

    try:
        with transaction.atomic():
            return MarathonParticipant.objects.create(marathon=marathon, user_id=user_id)
    except IntegrityError:
        raise ValidationError("Already joined.")
