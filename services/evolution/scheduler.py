from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

import config
from logging_config import get_logger, log_error

logger = get_logger(__name__)

scheduler = AsyncIOScheduler()


def _service():
    from service import get_service
    return get_service()


async def expire_overdue_proposals(service=None):
    """pending → expired for everything past its TTL"""
    service = service or _service()
    expired = await service.expire_sweep()
    logger.info("expiry_job_completed", expired=len(expired))
    return expired


async def _run_reflection(service, schedule: str):
    service = service or _service()
    logger.info("reflection_job_started", schedule=schedule)
    try:
        summary = await service.run_reflection(schedule=schedule)
    except Exception as e:
        log_error(e, context={"job": "reflection", "schedule": schedule})
        return {}
    logger.info("reflection_job_completed", schedule=schedule, agents=len(summary), admitted=sum(summary.values()))
    return summary


async def run_weekly_reflection(service=None):
    """Reflection for agents on the weekly schedule"""
    return await _run_reflection(service, "weekly")


async def run_daily_reflection(service=None):
    """Reflection for agents that opted into a daily schedule"""
    return await _run_reflection(service, "daily")


async def report_unapplied_proposals(service=None):
    """
    Reconciliation report: approved AND NOT applied past the grace period.

    Only reports; retry_apply stays an operator decision.
    """
    service = service or _service()
    stuck = await service.list_unapplied()
    for proposal in stuck:
        logger.warning(
            "proposal_approved_not_applied",
            proposal_id=proposal.id,
            agent_id=proposal.agent_id,
            resolved_at=proposal.resolved_at.isoformat() if proposal.resolved_at else None,
            apply_attempts=proposal.apply_attempts,
            last_apply_error=proposal.last_apply_error,
        )
    return [proposal.id for proposal in stuck]


def register_jobs(target: AsyncIOScheduler = None) -> AsyncIOScheduler:
    target = target or scheduler
    policy = config.SCHEDULER_POLICY

    # ⏳ EXPIRY: every 15 min by default
    target.add_job(
        expire_overdue_proposals,
        'interval',
        minutes=policy["expiry_sweep_minutes"],
        id='soul_expiry_sweep',
        replace_existing=True,
    )

    # 🪞 REFLECTION: weekly, staggered by jitter
    target.add_job(
        run_weekly_reflection,
        CronTrigger(
            day_of_week=policy["reflection_day_of_week"],
            hour=policy["reflection_hour"],
            minute=0,
            jitter=policy["reflection_jitter_seconds"],
        ),
        id='soul_reflection',
        replace_existing=True,
    )

    # 🪞 REFLECTION (daily schedule): same hour, every day
    target.add_job(
        run_daily_reflection,
        CronTrigger(
            hour=policy["reflection_hour"],
            minute=0,
            jitter=policy["reflection_jitter_seconds"],
        ),
        id='soul_reflection_daily',
        replace_existing=True,
    )

    # 🔍 RECONCILIATION: hourly
    target.add_job(
        report_unapplied_proposals,
        'interval',
        minutes=policy["reconciliation_minutes"],
        id='soul_reconciliation',
        replace_existing=True,
    )
    return target


def start_scheduler():
    register_jobs(scheduler)
    scheduler.start()
    logger.info("scheduler_started",
               expiry_sweep=f"every {config.SCHEDULER_POLICY['expiry_sweep_minutes']} min",
               reflection=f"weekly {config.SCHEDULER_POLICY['reflection_day_of_week']} "
                          f"{config.SCHEDULER_POLICY['reflection_hour']}:00 ± jitter",
               daily_reflection=f"daily {config.SCHEDULER_POLICY['reflection_hour']}:00 ± jitter",
               reconciliation=f"every {config.SCHEDULER_POLICY['reconciliation_minutes']} min")


def shutdown_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")
