"""
Push-notification channel to technician devices.

Delivery is owned by an external service; this module is the seam the
dispatch engine calls and tests patch.
"""

import logging

logger = logging.getLogger(__name__)


async def send_job_notification(
    title: str, body: str, job_id: str, deep_link: str
) -> bool:
    logger.info(
        f"push notification queued: {title!r} -> {deep_link}",
        extra={"job_id": job_id},
    )
    return True
