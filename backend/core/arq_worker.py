"""
ARQ (Async Redis Queue) Worker Configuration
Runs the order pipeline sweeps on cron schedules and processes queued splits
"""
import logging
from typing import Dict, Any, Optional
from uuid import UUID
from arq import create_pool, cron
from arq.connections import RedisSettings
from core.config import settings
from core.database import db_manager, initialize_db

logger = logging.getLogger(__name__)

# ARQ Redis settings
ARQ_REDIS_SETTINGS = RedisSettings.from_dsn(settings.ARQ_REDIS_URL)


async def startup(ctx: Dict[str, Any]) -> None:
    """Worker startup - initialize database connection"""
    logger.info("ARQ Worker starting up...")
    initialize_db(settings.SQLALCHEMY_DATABASE_URI, settings.ENVIRONMENT == "local")
    # Store database session factory in context for tasks to use
    ctx['db_session'] = db_manager.session_factory


async def shutdown(ctx: Dict[str, Any]) -> None:
    """Worker shutdown - cleanup resources"""
    logger.info("ARQ Worker shutting down...")
    await db_manager.dispose()


def _pipeline(ctx: Dict[str, Any], db):
    from services.pipeline import OrderPipeline
    # Tests put fake collaborators in the context
    return OrderPipeline(db, gateway=ctx.get('payment_gateway'), dispatcher=ctx.get('fulfillment_dispatcher'))


# Background task functions
async def process_retry_pending_orders_task(ctx: Dict[str, Any]) -> Dict[str, Any]:
    """Re-dispatch orders whose retry is due"""
    async with ctx['db_session']() as db:
        summary = await _pipeline(ctx, db).process_due_retries()
    logger.info(f"Retry sweep: {summary.succeeded} submitted, {summary.rescheduled} rescheduled, "
                f"{summary.failed_permanently} failed, {summary.skipped} skipped")
    return summary.model_dump(mode="json")


async def payment_reconciliation_task(ctx: Dict[str, Any]) -> Dict[str, Any]:
    """Reconcile recent pending orders with the payment gateway"""
    async with ctx['db_session']() as db:
        summary = await _pipeline(ctx, db).run_payment_reconciliation()
    logger.info(f"Payment reconciliation: {summary.checked} checked, {summary.reconciled} reconciled, "
                f"{len(summary.discrepancies)} discrepancies")
    return summary.model_dump(mode="json")


async def order_recovery_task(ctx: Dict[str, Any]) -> Dict[str, Any]:
    """Recover orders stuck after payment verification or dispatch"""
    async with ctx['db_session']() as db:
        summary = await _pipeline(ctx, db).run_order_recovery()
    logger.info(f"Order recovery: {summary.recovered} recovered, {summary.redispatched} re-dispatched")
    return summary.model_dump(mode="json")


async def duplicate_orders_task(ctx: Dict[str, Any], mode: str = "report") -> Dict[str, Any]:
    """Report, or clean up, orders sharing a fulfillment reference"""
    from schemas.pipeline import DuplicateCleanupMode

    async with ctx['db_session']() as db:
        summary = await _pipeline(ctx, db).run_duplicate_cleanup(DuplicateCleanupMode(mode))
    logger.info(f"Duplicate orders ({mode}): {summary.groups_found} groups, {summary.cancelled} cancelled")
    return summary.model_dump(mode="json")


async def split_order_task(ctx: Dict[str, Any], order_id: str) -> Dict[str, Any]:
    """Split a paid multi-recipient order and dispatch its children"""
    async with ctx['db_session']() as db:
        summary = await _pipeline(ctx, db).split_order(UUID(order_id))
    logger.info(f"Split order {order_id}: {summary.outcome.value}, parent {summary.parent_status}")
    return summary.model_dump(mode="json")


async def duplicate_report_cron(ctx: Dict[str, Any]) -> Dict[str, Any]:
    return await duplicate_orders_task(ctx, "report")


# ARQ Worker Settings
class WorkerSettings:
    """ARQ Worker configuration"""
    redis_settings = ARQ_REDIS_SETTINGS
    functions = [
        process_retry_pending_orders_task,
        payment_reconciliation_task,
        order_recovery_task,
        duplicate_orders_task,
        split_order_task,
    ]
    cron_jobs = [
        cron(process_retry_pending_orders_task, minute=0, unique=True),
        cron(payment_reconciliation_task, minute={0, 30}, unique=True),
        cron(order_recovery_task, minute={5, 20, 35, 50}, unique=True),
        cron(duplicate_report_cron, hour=3, minute=15, unique=True),
    ]
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = 10
    job_timeout = 900  # sweeps pace themselves with per-order delays
    keep_result = 3600  # Keep results for 1 hour


async def get_arq_pool():
    """Get ARQ Redis pool for enqueueing jobs"""
    return await create_pool(ARQ_REDIS_SETTINGS)


# Convenience function for enqueueing split processing
async def enqueue_split_order(order_id: str, delay_seconds: Optional[int] = None):
    """Queue split processing; one queued job per order at a time"""
    pool = await get_arq_pool()
    kwargs = {'_job_id': f"split_order:{order_id}"}
    if delay_seconds:
        kwargs['_defer_by'] = delay_seconds
    return await pool.enqueue_job('split_order_task', str(order_id), **kwargs)
