from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..core.errors import (
    ChainError,
    ConcurrentUpdateError,
    CustomerNotFoundError,
    InsufficientRewardsError,
    ReconciliationWarning,
    ValidationError,
)


logger = logging.getLogger(__name__)

_CHAIN_STATUS = {
    "user-rejected": 400,
    "chain-not-configured": 503,
}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(CustomerNotFoundError)
    async def customer_not_found_handler(
        request: Request, exc: CustomerNotFoundError
    ) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InsufficientRewardsError)
    async def insufficient_rewards_handler(
        request: Request, exc: InsufficientRewardsError
    ) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ConcurrentUpdateError)
    async def concurrent_update_handler(
        request: Request, exc: ConcurrentUpdateError
    ) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(ChainError)
    async def chain_error_handler(request: Request, exc: ChainError) -> JSONResponse:
        logger.warning(
            "chain.request.failed",
            extra={"path": request.url.path, "reason": exc.reason},
        )
        return JSONResponse(
            status_code=_CHAIN_STATUS.get(exc.reason, 502),
            content={
                "detail": str(exc),
                "reason": exc.reason,
                "is_user_rejection": exc.is_user_rejection,
            },
        )

    @app.exception_handler(ReconciliationWarning)
    async def reconciliation_warning_handler(
        request: Request, exc: ReconciliationWarning
    ) -> JSONResponse:
        # Payment went through on-chain; only the mirror is behind.
        return JSONResponse(
            status_code=202,
            content={
                "payment": "succeeded",
                "sync": "pending",
                "tx_hash": exc.tx_hash,
                "wallet_address": exc.wallet_address,
                "detail": str(exc),
            },
        )
