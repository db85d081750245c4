# Order pipeline entry points
# Each endpoint runs one pipeline operation and returns its structured summary

from fastapi import APIRouter, Depends
from typing import List
from uuid import UUID

from core.dependencies import get_pipeline
from core.utils.response import Response
from schemas.pipeline import BulkVerificationItem, DuplicateCleanupRequest, VerifyPaymentRequest
from services.pipeline import OrderPipeline

router = APIRouter(prefix="/pipeline", tags=["Order Pipeline"])


@router.post("/payments/verify")
async def verify_payment(
    request: VerifyPaymentRequest,
    pipeline: OrderPipeline = Depends(get_pipeline)
):
    """Verify a payment against the gateway, correcting the order if it drifted"""
    result = await pipeline.verify_payment(
        session_id=request.session_id,
        payment_intent_id=request.payment_intent_id,
        max_attempts=request.max_attempts,
    )
    return Response(success=True, data=result, message=f"Payment verification {result.outcome.value}")


@router.post("/payments/verify/bulk")
async def bulk_verify_payments(
    items: List[BulkVerificationItem],
    pipeline: OrderPipeline = Depends(get_pipeline)
):
    results = await pipeline.verifier.bulk_verification(items)
    return Response(success=True, data=results, message=f"Verified {len(results)} payments")


@router.post("/reconciliation")
async def run_payment_reconciliation(pipeline: OrderPipeline = Depends(get_pipeline)):
    summary = await pipeline.run_payment_reconciliation()
    return Response(success=True, data=summary, message="Payment reconciliation complete")


@router.post("/recovery")
async def run_order_recovery(pipeline: OrderPipeline = Depends(get_pipeline)):
    summary = await pipeline.run_order_recovery()
    return Response(success=True, data=summary, message="Order recovery complete")


@router.post("/retries")
async def process_due_retries(pipeline: OrderPipeline = Depends(get_pipeline)):
    summary = await pipeline.process_due_retries()
    return Response(success=True, data=summary, message="Retry sweep complete")


@router.post("/duplicates")
async def run_duplicate_cleanup(
    request: DuplicateCleanupRequest,
    pipeline: OrderPipeline = Depends(get_pipeline)
):
    """Report duplicate orders, or cancel them with mode=cleanup"""
    summary = await pipeline.run_duplicate_cleanup(request.mode)
    return Response(
        success=True,
        data=summary,
        message=f"Found {summary.groups_found} duplicate groups, cancelled {summary.cancelled} orders"
    )


@router.post("/orders/{order_id}/split")
async def split_order(order_id: UUID, pipeline: OrderPipeline = Depends(get_pipeline)):
    """Split a paid multi-recipient order and dispatch each child"""
    summary = await pipeline.split_order(order_id)
    return Response(
        success=summary.failed == 0,
        data=summary,
        message=f"Split outcome: {summary.outcome.value}, parent {summary.parent_status}"
    )
