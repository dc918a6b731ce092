import logging

from celery import shared_task

from . import services

logger = logging.getLogger(__name__)


@shared_task
def complete_ended_marathons():
    # A failed tick is only logged; the next scheduled run starts over
    # from the current state.
    try:
        result = services.complete_ended_marathons()
    except Exception:
        logger.exception("Error completing marathons")
        return None
    return {"marathons": result.marathons, "participants": result.participants}
