"""Celery task for the launch routine."""

import asyncio

from splitrender.celery_app import celery_app
from splitrender.config import get_settings
from splitrender.services.launcher import handle_launch

settings = get_settings()


@celery_app.task(name=settings.launch_task_name)
def launch_task(payload: dict) -> dict:
    """
    Orchestrate one render job: plan, dispatch, concatenate and finalize.

    Args:
        payload: Raw launch payload (``type="launch"``)

    Returns:
        dict with the terminal stage and output information
    """
    # Run the orchestrator (sync wrapper for async method)
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(handle_launch(payload))
    finally:
        loop.close()

    if not result.succeeded:
        return {
            "status": "failed",
            "render_id": payload.get("render_id"),
            "failed_at": result.failed_at.value if result.failed_at else None,
            "error": str(result.error),
        }
    return {
        "status": "completed",
        "render_id": payload.get("render_id"),
        "output_key": result.manifest.output_key,
        "output_size": result.manifest.output_size,
    }
