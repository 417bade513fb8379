"""
HTTP surface for checkout sessions and webhook endpoints.

Handlers are plain ``def`` functions, so FastAPI runs them in its threadpool;
the session store serialises mutations itself.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Type, Union

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .core.errors import (
    AccountNotFound,
    CheckoutError,
    ConfirmationTimeout,
    InsufficientBalance,
    InvalidAmount,
    InvalidTransition,
    InvalidWebhookSignature,
    LedgerError,
    RelayRejected,
    RelayUnavailable,
    SessionAlreadyFinalized,
    SessionExpired,
    SessionNotFound,
    StaleSignature,
    TransactionBuildFailed,
    UnsupportedToken,
)
from .core.models import EventType, isoformat
from .core.service import CheckoutService
from .core.webhooks import SIGNATURE_HEADER, WebhookHandlerTable, WebhookVerifier, handle_webhook

__all__ = ["ERROR_STATUS", "create_app", "status_for"]

logger = logging.getLogger(__name__)

ERROR_STATUS: Dict[Type[CheckoutError], int] = {
    InvalidAmount: 400,
    UnsupportedToken: 400,
    AccountNotFound: 400,
    InsufficientBalance: 400,
    InvalidWebhookSignature: 401,
    SessionNotFound: 404,
    SessionAlreadyFinalized: 409,
    InvalidTransition: 409,
    StaleSignature: 409,
    SessionExpired: 410,
    LedgerError: 502,
    TransactionBuildFailed: 502,
    RelayRejected: 502,
    RelayUnavailable: 503,
    ConfirmationTimeout: 504,
}


def status_for(exc: CheckoutError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 400


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateSessionRequest(_Body):
    merchant_id: str = Field(alias="merchantId", min_length=1)
    merchant_name: str = Field(alias="merchantName", min_length=1)
    merchant_wallet: str = Field(alias="merchantWallet", min_length=1)
    amount: Union[str, int, float]
    success_url: str = Field(alias="successUrl", min_length=1)
    cancel_url: str = Field(alias="cancelUrl", min_length=1)
    currency: str = "USDC"
    description: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    order_id: Optional[str] = Field(default=None, alias="orderId")
    webhook_url: Optional[str] = Field(default=None, alias="webhookUrl")
    expires_in: Optional[int] = Field(default=None, alias="expiresIn")


class CompleteSessionRequest(_Body):
    session_id: str = Field(alias="sessionId", min_length=1)
    signature: str = Field(min_length=1)
    payer_address: Optional[str] = Field(default=None, alias="payerAddress")


class SubmitSessionRequest(_Body):
    session_id: str = Field(alias="sessionId", min_length=1)
    signature: str = Field(min_length=1)
    payer_address: str = Field(alias="payerAddress", min_length=1)


class CancelSessionRequest(_Body):
    session_id: str = Field(alias="sessionId", min_length=1)


class RegisterWebhookRequest(_Body):
    merchant_id: str = Field(alias="merchantId", min_length=1)
    url: str = Field(min_length=1)
    events: Optional[List[EventType]] = None


def get_service(request: Request) -> CheckoutService:
    return request.app.state.service


router = APIRouter(tags=["checkout"])


@router.post("/checkout/sessions")
def create_session(
    body: CreateSessionRequest,
    service: CheckoutService = Depends(get_service),
) -> Dict[str, Any]:
    created = service.create_session(
        merchant_id=body.merchant_id,
        merchant_name=body.merchant_name,
        merchant_wallet=body.merchant_wallet,
        amount=body.amount,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
        currency=body.currency.upper(),
        description=body.description,
        metadata=body.metadata,
        order_id=body.order_id,
        webhook_url=body.webhook_url,
        expires_in=body.expires_in,
    )
    session = created.session
    response: Dict[str, Any] = {
        "id": session.id,
        "url": session.url,
        "expiresAt": int(session.expires_at * 1000),
        "status": session.status.value,
        "paymentId": session.payment.id,
    }
    if created.webhook_created and created.webhook is not None:
        response["webhookId"] = created.webhook.id
        response["webhookSecret"] = created.webhook.secret
    return response


@router.get("/checkout/sessions")
def get_session(
    session_id: Optional[str] = Query(default=None, alias="id"),
    service: CheckoutService = Depends(get_service),
) -> Dict[str, Any]:
    if not session_id:
        raise HTTPException(status_code=400, detail="Session ID required")
    return service.get_session(session_id).to_dict()


@router.post("/checkout/complete")
def complete_session(
    body: CompleteSessionRequest,
    service: CheckoutService = Depends(get_service),
) -> Dict[str, Any]:
    session = service.complete(body.session_id, body.signature, body.payer_address)
    return {
        "success": True,
        "session": {
            "id": session.id,
            "status": session.status.value,
            "successUrl": session.success_url,
            "txSignature": session.tx_signature,
            "completedAt": isoformat(session.completed_at),
        },
    }


@router.post("/checkout/submit")
def submit_session(
    body: SubmitSessionRequest,
    service: CheckoutService = Depends(get_service),
) -> Dict[str, Any]:
    session = service.submit(body.session_id, body.signature, body.payer_address)
    return {"id": session.id, "status": session.status.value, "txSignature": body.signature}


@router.post("/checkout/cancel")
def cancel_session(
    body: CancelSessionRequest,
    service: CheckoutService = Depends(get_service),
) -> Dict[str, Any]:
    session = service.cancel(body.session_id)
    return {"id": session.id, "status": session.status.value, "cancelUrl": session.cancel_url}


@router.post("/webhooks")
def register_webhook(
    body: RegisterWebhookRequest,
    service: CheckoutService = Depends(get_service),
) -> Dict[str, Any]:
    endpoint = service.register_webhook(body.merchant_id, body.url, body.events)
    return endpoint.to_dict(include_secret=True)


@router.get("/webhooks")
def list_webhooks(
    merchant_id: str = Query(alias="merchantId"),
    service: CheckoutService = Depends(get_service),
) -> Dict[str, Any]:
    return {"webhooks": [e.to_dict() for e in service.endpoints.for_merchant(merchant_id)]}


def _receiver_router(verifier: WebhookVerifier, handlers: WebhookHandlerTable) -> APIRouter:
    receiver = APIRouter(tags=["webhooks"])

    @receiver.post("/webhooks/receive")
    async def receive_webhook(request: Request) -> JSONResponse:
        raw_body = await request.body()
        status_code, payload = handle_webhook(
            raw_body, request.headers.get(SIGNATURE_HEADER), verifier, handlers
        )
        return JSONResponse(status_code=status_code, content=payload)

    return receiver


async def _checkout_error_handler(request: Request, exc: CheckoutError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content={"error": exc.message, **exc.to_dict()})


def _validation_error_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    missing = [str(err["loc"][-1]) for err in errors if err.get("type") == "missing" and err.get("loc")]
    if missing:
        return f"Missing required fields: {', '.join(missing)}"
    if not errors:
        return "Invalid request"
    return errors[0].get("msg") or "Invalid request"


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("Rejected %s %s: %s", request.method, request.url.path, exc.errors())
    return JSONResponse(status_code=400, content={"error": _validation_error_message(exc)})


async def _value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc)})


def create_app(
    service: CheckoutService,
    *,
    webhook_secret: Optional[str] = None,
    webhook_handlers: Optional[WebhookHandlerTable] = None,
) -> FastAPI:
    """
    Build the FastAPI application around ``service``.

    ``/webhooks/receive`` is only mounted when ``webhook_secret`` is given.
    """

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        service.shutdown()

    app = FastAPI(title="Checkout Payments", version="0.1.0", lifespan=lifespan)
    app.state.service = service
    app.include_router(router)
    if webhook_secret:
        app.include_router(
            _receiver_router(WebhookVerifier(webhook_secret), webhook_handlers or WebhookHandlerTable())
        )
    app.add_exception_handler(CheckoutError, _checkout_error_handler)
    app.add_exception_handler(ValueError, _value_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)

    return app
