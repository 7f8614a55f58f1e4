"""
Minimal x402-protected mock server on Base Sepolia.

Verifies payment headers locally instead of settling through a facilitator,
and rejects replayed authorization nonces.
"""

import base64
import json
import time

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tollgate.config import PaymentConfig
from tollgate.errors import DecodeError
from tollgate.payment import PaymentRequirement, parse_payment_header, verify_payment_header

app = FastAPI()

HOST = "127.0.0.1"
PORT = 8402
PAY_TO = "0x273326453960864FbA4D2F6Cf09D65fA13E45297"

CONFIG = PaymentConfig(network="eip155:84532")
REQUIREMENT = PaymentRequirement(
    scheme="exact",
    network=CONFIG.network,
    max_amount_required=1_000,
    resource=f"http://{HOST}:{PORT}/data",
    pay_to=PAY_TO,
    asset=CONFIG.default_asset,
    description="Test endpoint",
    max_timeout_seconds=60,
    extra={"name": "USDC", "version": "2"},
)

_seen_nonces: set[str] = set()


def _payment_required(error: str) -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content={"x402Version": 1, "error": error, "accepts": [REQUIREMENT.to_dict()]},
    )


@app.get("/")
async def root():
    return {"status": "ok"}


@app.get("/data")
async def data(request: Request):
    raw = request.headers.get(CONFIG.payment_header)
    if not raw:
        return _payment_required("X-PAYMENT header is required")

    try:
        header = parse_payment_header(raw)
    except DecodeError as e:
        return _payment_required(f"Invalid payment header: {e}")

    nonce = header.payload.authorization.nonce.lower()
    if nonce in _seen_nonces:
        return _payment_required("Authorization nonce already used")

    valid, reason = verify_payment_header(header, REQUIREMENT, int(time.time()), config=CONFIG)
    if not valid:
        return _payment_required(reason)
    _seen_nonces.add(nonce)

    settlement = {
        "success": True,
        "payer": header.payload.authorization.from_address,
        "network": header.network,
        "nonce": nonce,
    }
    return JSONResponse(
        content={"message": "Payment successful!", "cost": "0.001 USDC"},
        headers={"X-PAYMENT-RESPONSE": base64.b64encode(json.dumps(settlement).encode()).decode()},
    )


if __name__ == "__main__":
    uvicorn.run(app, host=HOST, port=PORT)
