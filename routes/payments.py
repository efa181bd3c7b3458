from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse

from core.dependencies import callback_payload, get_orchestrator, raw_body
from services.errors import SignatureError
from services.gateways.registry import GatewayRegistry, get_gateway_registry
from services.payment_orchestrator import PaymentOrchestrator, PaymentOutcome, PaymentSession
from schemas.common import Envelope
from schemas.payment import (
    CashOnDeliveryRequest,
    PaymentMethodOut,
    PaymentOut,
    PaymentOutcomeOut,
    PaymentSessionOut,
    PaymentStatsOut,
    PaymentStatusUpdate,
    RefundRequest,
    SSLCommerzSessionRequest,
    ShurjoPaySessionRequest,
    StripeConfirmRequest,
    StripeIntentRequest,
)

router = APIRouter(prefix="/payments", tags=["payments"])


def _details(data, **options) -> Dict[str, Any]:
    customer_info = getattr(data, "customer_info", None)
    return {
        "amount": getattr(data, "amount", None),
        "currency": getattr(data, "currency", None),
        "user_id": data.user_id,
        "customer_info": customer_info.model_dump(exclude_none=True) if customer_info else {},
        "options": {key: value for key, value in options.items() if value is not None},
    }


def _session_response(result: PaymentSession, message: str) -> Dict[str, Any]:
    return {
        "success": True,
        "message": message,
        "data": {
            "payment": result.payment,
            "redirect_url": result.session.redirect_url,
            "client_secret": result.session.client_secret,
            "transaction_id": result.session.transaction_id,
            "payment_intent_id": result.session.payment_intent_id,
        },
    }


def _outcome_response(outcome: PaymentOutcome) -> Dict[str, Any]:
    return {
        "success": outcome.status in ("completed", "processing"),
        "message": outcome.message,
        "data": {
            "payment": outcome.payment,
            "status": outcome.status,
            "applied": outcome.applied,
            "details": outcome.extra,
        },
    }


def _ipn(orchestrator: PaymentOrchestrator, method: str, payload: Dict[str, Any]) -> str:
    try:
        return orchestrator.handle_ipn(method, payload)
    except SignatureError as exc:
        raise SignatureError("Invalid IPN signature") from exc


@router.get("/methods", response_model=Envelope[List[PaymentMethodOut]])
def list_payment_methods(gateways: GatewayRegistry = Depends(get_gateway_registry)):
    return {"success": True, "message": "Payment methods retrieved", "data": gateways.methods()}


# Stripe

@router.post("/stripe/create-intent", response_model=Envelope[PaymentSessionOut], status_code=201)
def create_stripe_intent(data: StripeIntentRequest, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    result = orchestrator.initiate(data.invoice_id, "stripe", _details(data))
    return _session_response(result, "Payment intent created")


@router.post("/stripe/confirm", response_model=Envelope[PaymentOutcomeOut])
def confirm_stripe_payment(data: StripeConfirmRequest, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    outcome = orchestrator.handle_callback("stripe", {"payment_intent_id": data.payment_intent_id})
    return _outcome_response(outcome)


@router.post("/stripe/webhook", response_class=PlainTextResponse)
def stripe_webhook(
    request: Request,
    body: bytes = Depends(raw_body),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.handle_webhook("stripe", body, dict(request.headers))


# SSL Commerz

@router.post("/ssl-commerz/create-session", response_model=Envelope[PaymentSessionOut], status_code=201)
def create_ssl_commerz_session(
    data: SSLCommerzSessionRequest,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    details = _details(
        data,
        success_url=data.success_url,
        fail_url=data.fail_url,
        cancel_url=data.cancel_url,
        product_category=data.product_category,
        product_name=data.product_name,
    )
    result = orchestrator.initiate(data.invoice_id, "ssl_commerz", details)
    return _session_response(result, "SSL Commerz session created")


@router.post("/ssl-commerz/callback", response_model=Envelope[PaymentOutcomeOut])
def ssl_commerz_callback(
    payload: Dict[str, Any] = Depends(callback_payload),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return _outcome_response(orchestrator.handle_callback("ssl_commerz", payload))


@router.post("/ssl-commerz/ipn", response_class=PlainTextResponse)
def ssl_commerz_ipn(
    payload: Dict[str, Any] = Depends(callback_payload),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return _ipn(orchestrator, "ssl_commerz", payload)


# ShurjoPay

@router.post("/shurjopay/create-session", response_model=Envelope[PaymentSessionOut], status_code=201)
def create_shurjopay_session(
    data: ShurjoPaySessionRequest,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    details = _details(data, return_url=data.return_url, cancel_url=data.cancel_url, client_ip=data.client_ip)
    result = orchestrator.initiate(data.invoice_id, "shurjopay", details)
    return _session_response(result, "ShurjoPay session created")


@router.post("/shurjopay/callback", response_model=Envelope[PaymentOutcomeOut])
def shurjopay_callback(
    payload: Dict[str, Any] = Depends(callback_payload),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return _outcome_response(orchestrator.handle_callback("shurjopay", payload))


@router.post("/shurjopay/ipn", response_class=PlainTextResponse)
def shurjopay_ipn(
    payload: Dict[str, Any] = Depends(callback_payload),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return _ipn(orchestrator, "shurjopay", payload)


# Cash on delivery

@router.post("/cash-on-delivery", response_model=Envelope[PaymentSessionOut], status_code=201)
def create_cash_on_delivery(data: CashOnDeliveryRequest, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    result = orchestrator.initiate(data.invoice_id, "cash_on_delivery", _details(data))
    return _session_response(result, "Cash on delivery payment created")


# Records

@router.get("/admin/all", response_model=Envelope[List[PaymentOut]])
def list_all_payments(orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    return {"success": True, "message": "Payments retrieved", "data": orchestrator.list_all()}


@router.get("/admin/stats", response_model=Envelope[PaymentStatsOut])
def payment_stats(orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    return {"success": True, "message": "Payment statistics retrieved", "data": orchestrator.stats()}


@router.get("/user/{user_id}", response_model=Envelope[List[PaymentOut]])
def list_user_payments(user_id: int, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    return {"success": True, "message": "Payments retrieved", "data": orchestrator.list_for_user(user_id)}


@router.get("/{payment_id}", response_model=Envelope[PaymentOut])
def get_payment(payment_id: int, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    return {"success": True, "message": "Payment retrieved", "data": orchestrator.get(payment_id)}


@router.patch("/{payment_id}/status", response_model=Envelope[PaymentOut])
def update_payment_status(
    payment_id: int,
    data: PaymentStatusUpdate,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    payment = orchestrator.update_status(payment_id, data.status, data.note)
    return {"success": True, "message": "Payment status updated", "data": payment}


@router.post("/{payment_id}/refund", response_model=Envelope[PaymentOut])
def refund_payment(payment_id: int, data: RefundRequest, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    payment = orchestrator.refund(payment_id, data.amount, data.reason)
    return {"success": True, "message": "Refund processed successfully", "data": payment}
