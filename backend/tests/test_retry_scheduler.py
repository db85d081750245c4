"""
Tests for retry backoff, the retry scheduler and the retry sweep
"""
from datetime import timedelta

import pytest
from hypothesis import given, strategies as st
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import AutomatedGiftExecution
from models.orders import Order, OrderStatus, PaymentStatus
from services.automated_gifts import AutomatedExecutionTracker
from services.fulfillment import FulfillmentService
from services.fulfillment_dispatcher import DispatchResult
from services.retry_scheduler import (
    MAX_RETRIES_EXCEEDED,
    MAX_RETRIES_MESSAGE,
    RetryScheduler,
    RetrySweep,
    backoff,
    normalize_fulfillment_method,
)
from tests.helpers import as_utc, audit_actions, hours, reload

SCHEDULE = (1.0, 4.0, 12.0)


class TestBackoff:

    def test_default_schedule(self):
        assert backoff(1, SCHEDULE) == hours(1)
        assert backoff(2, SCHEDULE) == hours(4)
        assert backoff(3, SCHEDULE) == hours(12)

    def test_attempts_past_the_schedule_reuse_the_last_delay(self):
        assert backoff(7, SCHEDULE) == hours(12)

    def test_attempt_must_be_positive(self):
        with pytest.raises(ValueError):
            backoff(0, SCHEDULE)

    def test_empty_schedule_is_rejected(self):
        with pytest.raises(ValueError):
            backoff(1, ())

    @given(attempt=st.integers(min_value=1, max_value=100))
    def test_backoff_never_shrinks(self, attempt):
        assert backoff(attempt + 1, SCHEDULE) >= backoff(attempt, SCHEDULE)


class TestNormalizeFulfillmentMethod:

    def test_legacy_method_is_rewritten(self):
        assert normalize_fulfillment_method(Order(fulfillment_method="zinc_api"), supported="zma") == "zma"

    def test_unknown_method_is_rewritten(self):
        assert normalize_fulfillment_method(Order(fulfillment_method="manual"), supported="zma") == "zma"

    def test_supported_method_is_left_alone(self):
        order = Order(fulfillment_method="zma")
        assert normalize_fulfillment_method(order, supported="zma") is None
        assert order.fulfillment_method == "zma"


def paid_order(**overrides):
    values = dict(status=OrderStatus.PROCESSING, payment_status=PaymentStatus.SUCCEEDED, fulfillment_method="zma")
    values.update(overrides)
    return values


class SweepRacedByOtherRun(RetrySweep):
    """Another run claims every due order right after this one selects them."""

    def __init__(self, *args, engine, **kwargs):
        super().__init__(*args, **kwargs)
        self.engine = engine

    async def due_order_ids(self):
        order_ids = await super().due_order_ids()
        other_run = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        async with other_run() as db:
            await db.execute(
                update(Order).where(Order.id.in_(order_ids)).values(status=OrderStatus.PROCESSING)
            )
            await db.commit()
        return order_ids


class FulfillmentRacedByOtherRun(FulfillmentService):
    """The order is claimed elsewhere after it was loaded but before the claim."""

    async def dispatch(self, order, expected_status=None, claim_values=None):
        await self.db.execute(
            update(Order)
            .where(Order.id == order.id)
            .values(status=OrderStatus.PROCESSING)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return await super().dispatch(order, expected_status=expected_status, claim_values=claim_values)


class TestRetryScheduler:

    @pytest.fixture
    def scheduler(self, db_session, clock):
        return RetryScheduler(db_session, max_retries=3, schedule_hours=SCHEDULE, now=lambda: clock)

    @pytest.mark.asyncio
    async def test_first_failure_schedules_a_retry(self, db_session, make_order, scheduler, clock):
        order = await make_order(**paid_order(retry_count=0))

        decision = await scheduler.record_dispatch_failure(order, "retailer unavailable")
        await db_session.commit()

        assert decision.applied and not decision.terminal
        assert decision.retry_count == 1
        assert decision.next_retry_at == clock + hours(1)

        stored = await reload(db_session, order)
        assert stored.status == OrderStatus.RETRY_PENDING
        assert stored.retry_count == 1
        assert as_utc(stored.next_retry_at) == clock + hours(1)
        assert stored.fulfillment_status == "dispatch_failed"
        assert "retry_scheduled" in await audit_actions(db_session, order.id)

    @pytest.mark.asyncio
    async def test_exhaustion_fails_order_and_automated_execution(self, db_session, make_order, scheduler):
        order = await make_order(**paid_order(retry_count=2))
        db_session.add(AutomatedGiftExecution(order_id=order.id, rule_id="birthday-rule", status="processing"))
        await db_session.commit()

        decision = await scheduler.record_dispatch_failure(order, "still failing")
        await db_session.commit()

        assert decision.applied and decision.terminal
        stored = await reload(db_session, order)
        assert stored.status == OrderStatus.FAILED
        assert stored.retry_count == 3
        assert stored.next_retry_at is None
        assert stored.fulfillment_status == MAX_RETRIES_EXCEEDED

        execution = (await db_session.execute(
            select(AutomatedGiftExecution)
            .where(AutomatedGiftExecution.order_id == order.id)
            .execution_options(populate_existing=True)
        )).scalar_one()
        assert execution.status == "failed"
        assert execution.error_message == MAX_RETRIES_MESSAGE
        assert MAX_RETRIES_EXCEEDED in await audit_actions(db_session, order.id)

    @pytest.mark.asyncio
    async def test_recording_the_same_failure_twice_applies_once(self, db_session, make_order, scheduler):
        order = await make_order(**paid_order(retry_count=0))

        first = await scheduler.record_dispatch_failure(order, "boom")
        second = await scheduler.record_dispatch_failure(order, "boom")
        await db_session.commit()

        assert first.applied is True
        assert second.applied is False
        stored = await reload(db_session, order)
        assert stored.retry_count == 1
        assert (await audit_actions(db_session, order.id)).count("retry_scheduled") == 1

    @pytest.mark.asyncio
    async def test_mark_failed_requires_reason(self, db_session, make_order):
        order = await make_order()
        with pytest.raises(ValueError):
            await AutomatedExecutionTracker(db_session).mark_failed(order.id, "  ")

    @pytest.mark.asyncio
    async def test_mark_failed_without_execution(self, db_session, make_order):
        order = await make_order()
        assert await AutomatedExecutionTracker(db_session).mark_failed(order.id, "gone") is False


class ExplodingFulfillment:
    async def dispatch(self, order, expected_status=None, claim_values=None):
        raise RuntimeError("dispatcher client crashed")


class TestRetrySweep:

    @pytest.fixture
    def sweep(self, db_session, dispatcher, sleep, clock):
        scheduler = RetryScheduler(db_session, max_retries=3, schedule_hours=SCHEDULE, now=lambda: clock)
        fulfillment = FulfillmentService(db_session, dispatcher, retry_scheduler=scheduler)
        return RetrySweep(
            db_session, fulfillment,
            batch_size=10, item_delay=2.0, per_order_timeout=30, max_retries=3,
            sleep=sleep, now=lambda: clock,
        )

    @pytest.mark.asyncio
    async def test_due_order_is_resubmitted_with_normalized_method(
        self, db_session, make_order, sweep, dispatcher, clock
    ):
        order = await make_order(**paid_order(
            status=OrderStatus.RETRY_PENDING,
            retry_count=1,
            next_retry_at=clock - timedelta(minutes=5),
            fulfillment_method="zinc_api",
        ))

        summary = await sweep.process_due_retries()

        assert summary.processed == 1
        assert summary.succeeded == 1
        assert dispatcher.submitted == [str(order.id)]

        stored = await reload(db_session, order)
        assert stored.status == OrderStatus.PROCESSING
        assert stored.fulfillment_method == "zma"
        assert stored.fulfillment_reference == "zma-ref-1"
        assert stored.fulfillment_status == "submitted"
        assert stored.next_retry_at is None

        actions = await audit_actions(db_session, order.id)
        assert "fulfillment_method_normalized" in actions
        assert "dispatch_submitted" in actions

    @pytest.mark.asyncio
    async def test_orders_not_yet_due_or_exhausted_are_ignored(self, make_order, sweep, dispatcher, clock):
        await make_order(**paid_order(
            status=OrderStatus.RETRY_PENDING, retry_count=1, next_retry_at=clock + hours(1)
        ))
        await make_order(**paid_order(
            status=OrderStatus.RETRY_PENDING, retry_count=3, next_retry_at=clock - hours(1)
        ))

        summary = await sweep.process_due_retries()

        assert summary.processed == 0
        assert dispatcher.submitted == []

    @pytest.mark.asyncio
    async def test_failed_retry_is_rescheduled(self, db_session, make_order, sweep, dispatcher, clock):
        dispatcher.results.append(DispatchResult(success=False, error="HTTP 503"))
        order = await make_order(**paid_order(
            status=OrderStatus.RETRY_PENDING, retry_count=1, next_retry_at=clock - hours(1)
        ))

        summary = await sweep.process_due_retries()

        assert summary.rescheduled == 1
        stored = await reload(db_session, order)
        assert stored.status == OrderStatus.RETRY_PENDING
        assert stored.retry_count == 2
        assert as_utc(stored.next_retry_at) == clock + hours(4)

    @pytest.mark.asyncio
    async def test_last_retry_failure_is_permanent(self, db_session, make_order, sweep, dispatcher, clock):
        dispatcher.results.append(DispatchResult(success=False, error="HTTP 503"))
        order = await make_order(**paid_order(
            status=OrderStatus.RETRY_PENDING, retry_count=2, next_retry_at=clock - hours(1)
        ))
        db_session.add(AutomatedGiftExecution(order_id=order.id, rule_id="weekly", status="processing"))
        await db_session.commit()

        summary = await sweep.process_due_retries()

        assert summary.failed_permanently == 1
        stored = await reload(db_session, order)
        assert stored.status == OrderStatus.FAILED
        assert stored.retry_count == 3
        execution = (await db_session.execute(
            select(AutomatedGiftExecution)
            .where(AutomatedGiftExecution.order_id == order.id)
            .execution_options(populate_existing=True)
        )).scalar_one()
        assert execution.status == "failed"

    @pytest.mark.asyncio
    async def test_already_dispatched_order_is_not_resubmitted(
        self, db_session, make_order, sweep, dispatcher, clock
    ):
        order = await make_order(**paid_order(
            status=OrderStatus.RETRY_PENDING,
            retry_count=1,
            next_retry_at=clock - hours(1),
            fulfillment_request_id="req-earlier",
        ))

        summary = await sweep.process_due_retries()

        assert summary.skipped == 1
        assert dispatcher.submitted == []
        assert (await reload(db_session, order)).status == OrderStatus.PROCESSING
        assert "retry_skipped_already_dispatched" in await audit_actions(db_session, order.id)

    @pytest.mark.asyncio
    async def test_sweep_pauses_between_orders(self, make_order, sweep, sleep, clock):
        for _ in range(3):
            await make_order(**paid_order(
                status=OrderStatus.RETRY_PENDING, retry_count=1, next_retry_at=clock - hours(1)
            ))

        summary = await sweep.process_due_retries()

        assert summary.succeeded == 3
        assert sleep.calls == [2.0, 2.0]

    @pytest.mark.asyncio
    async def test_one_broken_order_does_not_stop_the_sweep(self, db_session, make_order, sleep, clock):
        order = await make_order(**paid_order(
            status=OrderStatus.RETRY_PENDING, retry_count=1, next_retry_at=clock - hours(1)
        ))
        order_id = order.id
        sweep = RetrySweep(
            db_session, ExplodingFulfillment(),
            batch_size=10, item_delay=0, per_order_timeout=30, max_retries=3,
            sleep=sleep, now=lambda: clock,
        )

        summary = await sweep.process_due_retries()

        assert summary.processed == 1
        assert len(summary.errors) == 1
        assert summary.errors[0].order_id == order_id
        assert "dispatcher client crashed" in summary.errors[0].error
        assert (await reload(db_session, order_id)).status == OrderStatus.RETRY_PENDING
        assert "retry_sweep_error" in await audit_actions(db_session, order_id)

    @pytest.mark.asyncio
    async def test_order_taken_by_another_run_is_skipped(
        self, engine, db_session, make_order, dispatcher, sleep, clock
    ):
        order = await make_order(**paid_order(
            status=OrderStatus.RETRY_PENDING, retry_count=1, next_retry_at=clock - hours(1)
        ))
        scheduler = RetryScheduler(db_session, max_retries=3, schedule_hours=SCHEDULE, now=lambda: clock)
        sweep = SweepRacedByOtherRun(
            db_session, FulfillmentService(db_session, dispatcher, retry_scheduler=scheduler),
            engine=engine, batch_size=10, item_delay=0, per_order_timeout=30, max_retries=3,
            sleep=sleep, now=lambda: clock,
        )

        summary = await sweep.process_due_retries()

        assert summary.processed == 1
        assert summary.skipped == 1
        assert summary.succeeded == 0
        assert dispatcher.submitted == []
        stored = await reload(db_session, order)
        assert stored.status == OrderStatus.PROCESSING
        assert stored.retry_count == 1

    @pytest.mark.asyncio
    async def test_lost_claim_after_load_is_skipped(self, db_session, make_order, dispatcher, sleep, clock):
        order = await make_order(**paid_order(
            status=OrderStatus.RETRY_PENDING, retry_count=2, next_retry_at=clock - hours(1),
            fulfillment_method="zinc_api",
        ))
        scheduler = RetryScheduler(db_session, max_retries=3, schedule_hours=SCHEDULE, now=lambda: clock)
        sweep = RetrySweep(
            db_session, FulfillmentRacedByOtherRun(db_session, dispatcher, retry_scheduler=scheduler),
            batch_size=10, item_delay=0, per_order_timeout=30, max_retries=3,
            sleep=sleep, now=lambda: clock,
        )

        summary = await sweep.process_due_retries()

        assert summary.skipped == 1
        assert dispatcher.submitted == []
        stored = await reload(db_session, order)
        assert stored.retry_count == 2
        assert stored.fulfillment_method == "zinc_api"
        assert "fulfillment_method_normalized" not in await audit_actions(db_session, order.id)
