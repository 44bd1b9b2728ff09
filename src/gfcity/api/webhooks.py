"""
Payment gateway callbacks.

Gateways retry until they get a 2xx, so these handlers acknowledge every
delivery with 200, including ones we could not process. The one exception is a
Flutterwave callback whose `verif-hash` does not match: it did not come from
Flutterwave and gets a 401.
"""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from gfcity.api import deps
from gfcity.domain.errors import Unauthorized
from gfcity.domain.models import PaymentProviderName

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/flutterwave")
async def post_flutterwave_webhook(request: Request) -> JSONResponse:
    raw = await request.body()
    try:
        payload = json.loads(raw or b"{}")
    except ValueError:
        logger.error("Flutterwave webhook with a non-JSON body (%d bytes)", len(raw))
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    headers = {k.lower(): v for k, v in request.headers.items()}
    service = deps.get_service()
    try:
        ack = await run_in_threadpool(service.handle_gateway_callback, PaymentProviderName.FLUTTERWAVE, payload, headers)
    except Unauthorized as exc:
        return JSONResponse(status_code=401, content={"success": False, "message": exc.message})
    return JSONResponse(status_code=200, content=ack.model_dump(mode="json"))


@router.get("/webhooks/pesapal")
def get_pesapal_ipn(request: Request) -> JSONResponse:
    params = dict(request.query_params)
    ack = deps.get_service().handle_gateway_callback(PaymentProviderName.PESAPAL, params)
    # Pesapal expects its IPN identifiers echoed back with a status code.
    content = {
        "orderNotificationType": params.get("OrderNotificationType", "IPNCHANGE"),
        "orderTrackingId": params.get("OrderTrackingId"),
        "orderMerchantReference": params.get("OrderMerchantReference"),
        "status": 200 if ack.success else 500,
        **ack.model_dump(mode="json"),
    }
    return JSONResponse(status_code=200, content=content)
