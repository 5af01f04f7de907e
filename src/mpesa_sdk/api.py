import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from slowapi.errors import RateLimitExceeded

from .config import MpesaSettings, configure_logging
from .errors import AuthError, GatewayError, TransactionNotFound, ValidationError
from .gateway import CALLBACK_ACK, TokenProvider, StkPushGateway, get_gateway
from .limits import create_limiter, rate_limit_exceeded_handler
from .services import TransactionService
from .store import IdGenerator, TransactionStore

logger = logging.getLogger(__name__)


class StkPushBody(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    phone: str
    amount: int = Field(..., gt=0)

    @field_validator("amount", mode="before")
    @classmethod
    def amount_must_be_number(cls, value: Any) -> Any:
        # Lax int parsing would turn true into 1 and "100" into 100
        if isinstance(value, (bool, str)):
            raise ValueError("amount must be a number")
        return value


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    content = {"error": message}
    content.update({k: v for k, v in extra.items() if v is not None})
    return JSONResponse(status_code=status_code, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    """Map SDK errors onto ``{"error": ...}`` responses."""

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return _error(422, exc.message)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        return _error(422, "Invalid request body.", details=jsonable_encoder(exc.errors()))

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        return _error(500, exc.message, transactionId=exc.transaction_id)

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        return _error(500, exc.message, transactionId=exc.transaction_id)

    @app.exception_handler(TransactionNotFound)
    async def not_found_handler(request: Request, exc: TransactionNotFound):
        return _error(404, "Transaction not found.")


def create_app(
    settings: Optional[MpesaSettings] = None,
    store: Optional[TransactionStore] = None,
    token_provider: Optional[TokenProvider] = None,
    gateway: Optional[StkPushGateway] = None,
    id_generator: Optional[IdGenerator] = None,
) -> FastAPI:
    """Build the STK push API.

    Args:
        settings: Service settings. Loaded from the environment if omitted.
        store: Transaction store. A fresh in-memory store if omitted.
        token_provider: Gateway token source. Defaults to the gateway itself
            when it also provides tokens (the simulator does).
        gateway: STK push gateway. Built from ``settings`` if omitted.
        id_generator: Identifier generator for a store created here.

    Returns:
        The configured FastAPI application.
    """
    settings = settings or MpesaSettings.from_env()
    if gateway is None:
        default_tokens, gateway = get_gateway(settings)
        token_provider = token_provider or default_tokens
    if token_provider is None:
        if not isinstance(gateway, TokenProvider):
            raise ValueError("token_provider is required for this gateway")
        token_provider = gateway

    if store is None:
        store = TransactionStore(id_generator)
    service = TransactionService(
        store=store,
        token_provider=token_provider,
        gateway=gateway,
        request_timeout=settings.request_timeout,
        account_reference=settings.account_reference,
        transaction_desc=settings.transaction_desc,
    )
    limiter = create_limiter()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        logger.info(f"STK push API starting with {gateway.name} gateway")
        yield
        await service.drain()
        await gateway.aclose()

    app = FastAPI(title="M-Pesa STK Push Connector", lifespan=lifespan)
    app.state.settings = settings
    app.state.service = service
    app.state.limiter = limiter
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    register_exception_handlers(app)

    @app.post("/stk-push")
    @limiter.limit(settings.stk_push_rate_limit)
    async def stk_push(request: Request, body: StkPushBody):
        result = await service.initiate(body.phone, body.amount)
        return {
            "message": "STK Push initiated successfully.",
            "transactionId": result.local_id,
            "response": result.gateway_response.raw_gateway_response,
        }

    @app.get("/stk-callback")
    async def stk_callback_probe():
        return {"status": "Callback URL is active."}

    @app.post("/stk-callback")
    async def stk_callback(request: Request):
        try:
            payload = await request.json()
        except ValueError:
            payload = None
        try:
            service.handle_callback(payload)
        except Exception as e:
            # The gateway retries until acknowledged, so never fail the response
            logger.error(f"Error processing callback: {e}", exc_info=True)
        return PlainTextResponse(CALLBACK_ACK, status_code=200)

    @app.get("/transaction-status/{transaction_id}")
    async def transaction_status(transaction_id: str):
        return {"status": service.get_status(transaction_id).value}

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "gateway": gateway.health_check(),
            "transactions": len(store),
        }

    return app


app = create_app()
