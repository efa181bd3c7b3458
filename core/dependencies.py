import json
import logging
from typing import Any, Dict

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from core.db import get_db
from services.gateways.registry import GatewayRegistry, get_gateway_registry
from services.payment_orchestrator import PaymentOrchestrator

logger = logging.getLogger(__name__)


def get_orchestrator(
    db: Session = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateway_registry),
) -> PaymentOrchestrator:
    """FastAPI dependency wiring one orchestrator per request."""
    return PaymentOrchestrator(db, gateways)


async def callback_payload(request: Request) -> Dict[str, Any]:
    """Provider callback fields from query string plus JSON or form body.

    Gateways post either ``application/json`` or
    ``application/x-www-form-urlencoded``; body fields win over query fields.
    An unreadable body yields only the query fields.
    """
    payload: Dict[str, Any] = dict(request.query_params)
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            data = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("Ignoring malformed JSON callback body from %s", request.client.host if request.client else "?")
            return payload
        if isinstance(data, dict):
            payload.update(data)
        return payload

    if "form" in content_type:
        form = await request.form()
        payload.update({key: value for key, value in form.items() if isinstance(value, str)})
    return payload


async def raw_body(request: Request) -> bytes:
    return await request.body()
