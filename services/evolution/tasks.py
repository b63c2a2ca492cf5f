"""
CELERY TASKS - queued proposal delivery (DISPATCH_MODE=celery)
"""
import asyncio

from celery_config import celery_app
from logging_config import get_logger

logger = get_logger(__name__)


@celery_app.task(name='tasks.dispatch_proposal', bind=True, max_retries=3, default_retry_delay=30)
def dispatch_proposal(self, proposal_id: str) -> dict:
    """
    Deliver one pending proposal on every channel of its organization.

    Returns:
        {channel: delivered?}
    """
    from service import get_service

    logger.info("dispatch_task_started", proposal_id=proposal_id)

    async def run_dispatch():
        results = await get_service().fanout.dispatch(proposal_id)
        return {channel: result.ok for channel, result in results.items()}

    try:
        report = asyncio.run(run_dispatch())
    except Exception as e:
        logger.error("dispatch_task_failed", proposal_id=proposal_id, error=str(e), exc_info=True)
        raise self.retry(exc=e)

    logger.info("dispatch_task_completed", proposal_id=proposal_id, report=report)
    return report
