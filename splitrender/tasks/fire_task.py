"""Celery task for the fire-group routine (second level of the fan-out)."""

import asyncio
import logging

from splitrender.celery_app import celery_app
from splitrender.config import get_settings
from splitrender.exceptions import PayloadTypeMismatchError
from splitrender.services.dispatcher import CeleryInvocationClient, fire_group
from splitrender.services.launcher import parse_routine_payload

logger = logging.getLogger(__name__)

settings = get_settings()


@celery_app.task(name=settings.fire_task_name)
def fire_group_task(payload: dict) -> dict:
    """Submit every chunk render of one fan-out group."""
    fire = parse_routine_payload(payload)
    if fire.type != "fire-group":
        raise PayloadTypeMismatchError("fire-group", fire.type)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        receipts = loop.run_until_complete(fire_group(CeleryInvocationClient(), fire))
    finally:
        loop.close()

    logger.info("Fired %d chunk renders for %s", len(receipts), fire.render_id)
    return {"render_id": fire.render_id, "submitted": [r.submission_id for r in receipts]}
