"""FastAPI server for PayPer."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from payper import __version__
from payper.circuit_breaker import CircuitOpenError
from payper.errors import (
    OracleUnavailable,
    PayperError,
    PaymentError,
    PaymentExpired,
    PaymentNotFound,
    PaymentRequired,
    ProviderError,
    TaskNotFound,
)
from payper.rate_limiter import RateLimitError
from payper.schemas import MediaType
from payper.service import PayperService, build_service
from payper.validation import ValidationError

logger = logging.getLogger("payper.api")


def _get_api_key() -> Optional[str]:
    return os.getenv("PAYPER_API_KEY")


def _require_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    api_key = _get_api_key()
    if api_key and x_api_key != api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


def _service(request: Request) -> PayperService:
    return request.app.state.service


def _client_id(request: Request) -> str:
    """Rate-limit key: the peer address, or X-Client-Id from a caller holding the API key."""
    api_key = _get_api_key()
    forwarded = request.headers.get("x-client-id")
    if forwarded and api_key and request.headers.get("x-api-key") == api_key:
        return forwarded
    return request.client.host if request.client else "default"


class GenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    model_id: str = Field(..., min_length=1, validation_alias=AliasChoices("modelId", "model", "model_id"))
    prompt: str = Field(..., min_length=1)
    type: MediaType = MediaType.IMAGE
    options: Dict[str, Any] = Field(default_factory=dict)
    settlement_reference: Optional[str] = Field(
        None, validation_alias=AliasChoices("settlementReference", "txSignature", "settlement_reference")
    )
    generation_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("generationId", "generation_id")
    )


class VerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reference: str = Field(..., validation_alias=AliasChoices("reference", "signature", "txSignature"))
    generation_id: Optional[str] = Field(None, validation_alias=AliasChoices("generationId", "generation_id"))
    amount_usd: Optional[float] = Field(None, ge=0, validation_alias=AliasChoices("amountUSD", "amount_usd"))


def _status_for(exc: PayperError) -> int:
    if isinstance(exc, PaymentExpired):
        return 410
    if isinstance(exc, PaymentError):
        return 402
    if isinstance(exc, RateLimitError):
        return 429
    if isinstance(exc, OracleUnavailable):
        return 503
    if isinstance(exc, TaskNotFound):
        return 404
    if isinstance(exc, ValueError):
        # UnknownModel, InvalidOptions, InvalidPrice
        return 400
    if isinstance(exc, ProviderError):
        return 502
    return 500


def _error_body(exc: Exception, code: str, retryable: bool) -> Dict[str, Any]:
    return {"success": False, "error": str(exc), "code": code, "retryable": retryable}


def create_app(service: Optional[PayperService] = None) -> FastAPI:
    """Build the app around a service (wired from the environment by default)."""
    service = service or build_service()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.service.start()
        try:
            yield
        finally:
            app.state.service.stop()

    app = FastAPI(title="PayPer API", version=__version__, lifespan=lifespan)
    app.state.service = service

    @app.exception_handler(PayperError)
    def payper_error(request: Request, exc: PayperError) -> JSONResponse:
        status = _status_for(exc)
        headers: Dict[str, str] = {}

        if isinstance(exc, PaymentRequired):
            return JSONResponse(
                exc.challenge.to_dict(),
                status_code=402,
                headers={"WWW-Authenticate": exc.challenge.header_value()},
            )

        body = _error_body(exc, exc.code, exc.retryable)
        if isinstance(exc, PaymentError):
            body["generationId"] = exc.generation_id
            body["reference"] = exc.reference
            if isinstance(exc, PaymentNotFound):
                # same challenge as before; the client retries with the same reference
                described = request.app.state.service.payments.describe_pending(exc.generation_id)
                if described is not None:
                    fields, header = described
                    body.update(fields)
                    body["paymentRequired"] = True
                    headers["WWW-Authenticate"] = header
        if isinstance(exc, CircuitOpenError):
            headers["Retry-After"] = "60"
        if status >= 500:
            logger.warning("%s %s -> %d: %s", request.method, request.url.path, status, exc)
        return JSONResponse(body, status_code=status, headers=headers or None)

    @app.exception_handler(ValidationError)
    def validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(_error_body(exc, exc.code, False), status_code=400)

    @app.get("/health")
    def health(svc: PayperService = Depends(_service)) -> Dict[str, Any]:
        return svc.health()

    @app.get("/models")
    def models(
        type: Optional[MediaType] = Query(default=None),
        svc: PayperService = Depends(_service),
    ) -> Dict[str, Any]:
        return {
            "models": [
                {
                    "id": m.id,
                    "name": m.name,
                    "vendor": m.vendor,
                    "description": m.description,
                    "type": m.media_type.value,
                    "provider": m.provider_id.value,
                    "priceUSD": str(m.price_usd),
                }
                for m in svc.models(type)
            ]
        }

    @app.get("/price")
    def price(svc: PayperService = Depends(_service)) -> Dict[str, Any]:
        quote = svc.price()
        return {
            "symbol": svc.settings.token_symbol,
            "priceUSD": str(quote.price_usd),
            "source": quote.source.value,
            "sourceName": quote.source_name,
            "fetchedAt": quote.fetched_at.isoformat(),
        }

    @app.get("/quote/{model_id}")
    def quote(model_id: str, svc: PayperService = Depends(_service)) -> Dict[str, Any]:
        split = svc.quote(model_id)
        return {
            "model": model_id,
            "amountUSD": str(split.usd_amount),
            "totalTokens": split.total_tokens,
            "baseTokens": split.base_tokens,
            "feeTokens": split.fee_tokens,
            "feePercent": str(split.fee_percent),
            "tokenPriceUSD": str(split.unit_price_usd),
            "priceSource": split.price_source.value if split.price_source else None,
            "currency": svc.settings.token_symbol,
        }

    @app.post("/generate")
    def generate(
        req: GenerateRequest,
        request: Request,
        svc: PayperService = Depends(_service),
    ) -> Dict[str, Any]:
        result = svc.generate(
            req.model_id,
            req.prompt,
            req.type,
            options=req.options,
            reference=req.settlement_reference,
            generation_id=req.generation_id,
            client_id=_client_id(request),
        )
        return {
            "success": True,
            "taskId": result.task_id,
            "status": "processing",
            "model": result.model_id,
            "generationId": result.generation_id,
            "replayed": result.replayed,
        }

    @app.get("/generate/{task_id}")
    def generation_status(
        task_id: str,
        model: Optional[str] = Query(default=None),
        svc: PayperService = Depends(_service),
    ) -> Dict[str, Any]:
        return svc.status(task_id, model).to_dict()

    @app.post("/payment/verify")
    def verify_payment(req: VerifyRequest, svc: PayperService = Depends(_service)) -> Dict[str, Any]:
        paid = svc.verify_payment(req.reference, req.generation_id, req.amount_usd)
        return {"paid": paid}

    @app.get("/buyback/stats", dependencies=[Depends(_require_api_key)])
    def buyback_stats(svc: PayperService = Depends(_service)) -> Dict[str, Any]:
        return svc.buyback_stats()

    @app.post("/payments/expire", dependencies=[Depends(_require_api_key)])
    def expire_payments(svc: PayperService = Depends(_service)) -> Dict[str, Any]:
        return {"expired": svc.expire_stale()}

    return app
