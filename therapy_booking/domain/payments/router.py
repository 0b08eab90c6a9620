"""Payment router - FastAPI endpoints for checkout, gateway callbacks and webhooks"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.background import BackgroundTask

from ...auth import AuthContext, get_auth_context, require_client
from ...config import PAYMENT_WEBHOOK_SECRET
from ...database import get_db
from ...services.outbox import enqueue_outbox_events
from ...webhook_security import verify_payment_webhook
from ..booking.service import OUTCOME_CREDIT_ISSUED, ReconciliationResult
from ..sessions.schemas import to_session_response
from .schemas import CreateOrderRequest, CreateOrderResponse, PaymentResponse, to_payment_response
from .service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payment", tags=["Payments"])


def get_payment_service(db: Session = Depends(get_db)) -> PaymentService:
    """Dependency injection for PaymentService"""
    return PaymentService(db)


async def _callback_params(request: Request) -> dict:
    """Gateway callbacks arrive as form posts; the frontend may relay them as JSON"""
    if request.headers.get("content-type", "").startswith("application/json"):
        body = await request.json()
        return {k: "" if v is None else str(v) for k, v in body.items()}
    form = await request.form()
    return {k: str(v) for k, v in form.items()}


def _reconciliation_response(result: ReconciliationResult) -> JSONResponse:
    background = BackgroundTask(enqueue_outbox_events, result.event_ids) if result.event_ids else None
    payment = result.payment
    if result.outcome == OUTCOME_CREDIT_ISSUED:
        return JSONResponse(
            status_code=409,
            content={
                "detail": {
                    "code": "SLOT_TAKEN_CREDIT_ISSUED",
                    "message": "This slot was just booked by someone else. Your payment has been saved as credit.",
                    "transactionId": payment.transaction_id,
                    "amount": payment.amount,
                }
            },
            background=background,
        )
    session = to_session_response(result.session).model_dump() if result.session else None
    return JSONResponse(
        content={
            "status": result.outcome,
            "transactionId": payment.transaction_id,
            "session": session,
        },
        background=background,
    )


# ============================================================================
# CHECKOUT
# ============================================================================


@router.post("/order", response_model=CreateOrderResponse)
async def create_order(
    data: CreateOrderRequest,
    context: AuthContext = Depends(require_client),
    service: PaymentService = Depends(get_payment_service),
):
    """Signed gateway parameters for a reserved slot"""
    return service.create_order(context, data.quoteId, data.firstName, data.phone)


@router.post("/success")
async def payment_success(request: Request, service: PaymentService = Depends(get_payment_service)):
    """Gateway success callback (hash verified)"""
    params = await _callback_params(request)
    result = service.handle_success_callback(params)
    return _reconciliation_response(result)


@router.post("/failure")
async def payment_failure(request: Request, service: PaymentService = Depends(get_payment_service)):
    """Gateway failure callback (hash verified); frees the held slot"""
    params = await _callback_params(request)
    return service.handle_failure_callback(params)


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    service: PaymentService = Depends(get_payment_service),
):
    """
    Server-to-server payment events.

    Security:
      - HMAC-SHA256 of the raw body in 'X-Webhook-Signature', constant-time compared
      - Optional 'X-Webhook-Timestamp' replay window
      - Rejected outright when no secret is configured
    """
    _, raw_body = await verify_payment_webhook(request, PAYMENT_WEBHOOK_SECRET, raise_on_failure=True)
    payload, event_ids = service.handle_webhook(raw_body)
    if event_ids:
        background_tasks.add_task(enqueue_outbox_events, event_ids)
    return payload


# ============================================================================
# QUERIES
# ============================================================================


@router.get("/credits", response_model=list[PaymentResponse])
async def list_credits(
    context: AuthContext = Depends(require_client),
    service: PaymentService = Depends(get_payment_service),
):
    """Captured payments not yet attached to a session"""
    return [to_payment_response(p) for p in service.list_credits(context)]


@router.get("/status/{transaction_id}", response_model=PaymentResponse)
async def get_payment_status(
    transaction_id: str,
    context: AuthContext = Depends(get_auth_context),
    service: PaymentService = Depends(get_payment_service),
):
    return to_payment_response(service.get_payment(context, transaction_id))
