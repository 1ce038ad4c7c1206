"""Fapshi webhook receiver.

Always acknowledges with HTTP 200 once a transaction id is present, even when
the payment is unknown or reconciliation blows up: a non-2xx answer makes the
provider redeliver, and redelivery can't fix either case. Errors are logged.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from kontrivibe.api.subscriptions import reconcile_outcome
from kontrivibe.db.engine import get_session
from kontrivibe.errors import NotFoundError
from kontrivibe.middleware.metrics import metrics
from kontrivibe.services.fapshi import PaymentReport
from kontrivibe.services.notifications import dispatch_reconcile_result
from kontrivibe.services.reconciliation import reconcile

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/payment")
async def payment_webhook(request: Request, session: AsyncSession = Depends(get_session)):
    """Receive {transId, status, amount, payerName, email, financialTransId, dateConfirmed, medium}."""
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        payload = {}

    report = PaymentReport.from_payload(payload)
    if not report.transaction_id:
        logger.error("Webhook received without transaction ID")
        return JSONResponse(status_code=400, content={"success": False, "message": "Missing transaction ID"})

    logger.info("Webhook for transaction %s with status %s", report.transaction_id, report.status)

    try:
        result = await reconcile(session, report.transaction_id, report.status, report)
        await dispatch_reconcile_result(session, result)
    except NotFoundError:
        logger.warning("Payment log not found for transaction: %s", report.transaction_id)
        metrics.record_reconcile("webhook", "not_found")
        return {"success": False, "message": "Payment not found"}
    except Exception:
        logger.exception("Error processing webhook for transaction %s", report.transaction_id)
        await session.rollback()
        metrics.record_reconcile("webhook", "error")
        return {"success": False, "message": "Error processing webhook"}

    metrics.record_reconcile("webhook", reconcile_outcome(result))
    return {"success": True, "message": "Webhook processed", "status": result.status}
