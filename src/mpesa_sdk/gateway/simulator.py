"""Simulated gateway for exercising STK push flows without calling Daraja."""

import asyncio
import random
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional

from ..errors import AuthError, GatewayError
from .base import TokenProvider, StkPushGateway, StkPushRequest, StkPushResponse

logger = logging.getLogger(__name__)


class SimulatorScenario(str, Enum):
    """Predefined outcomes for a simulated STK push."""
    SUCCESS = "success"
    REJECTED = "rejected"
    HANG = "hang"


@dataclass
class SimulatedPush:
    """In-memory record of an STK push the simulator accepted."""
    checkout_request_id: str
    merchant_request_id: str
    phone: str
    amount: int
    body: Dict[str, Any]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class SimulatorConfig:
    """Configuration for simulator behavior."""
    success_rate: float = 1.0  # 0.0 to 1.0, share of pushes the gateway accepts
    delay_ms: int = 0  # Simulated latency for every call
    fail_auth: bool = False  # Token exchange always fails
    seed: Optional[int] = None  # Random seed for reproducibility


class SimulatorGateway(TokenProvider, StkPushGateway):
    """
    In-memory stand-in for Daraja, acting as both token provider and STK push gateway.

    Features:
    - Configurable acceptance rate and latency
    - Token exchange failure switch
    - Special phone numbers for specific outcomes
    - Daraja-shaped callback payloads for accepted pushes
    """

    name = "simulator"

    # Special payer numbers for triggering specific behaviors
    PHONE_REJECTED = "254700000001"
    PHONE_HANG = "254700000002"

    TOKEN = "sim_access_token"

    def __init__(
        self,
        config: Optional[SimulatorConfig] = None,
        checkout_ids: Optional[Iterable[str]] = None,
    ):
        """Initialize the simulator.

        Args:
            config: Behavior configuration.
            checkout_ids: Optional tracking identifiers to hand out, in order,
                before falling back to random ones.
        """
        self.config = config or SimulatorConfig()
        self._rng = random.Random(self.config.seed)
        self._checkout_ids: Optional[Iterator[str]] = iter(checkout_ids) if checkout_ids is not None else None
        self._pushes: Dict[str, SimulatedPush] = {}
        self.token_requests = 0
        logger.info("SimulatorGateway initialized")

    async def _apply_delay(self) -> None:
        if self.config.delay_ms > 0:
            await asyncio.sleep(self.config.delay_ms / 1000.0)

    def _next_checkout_id(self) -> str:
        if self._checkout_ids is not None:
            preset = next(self._checkout_ids, None)
            if preset is not None:
                return preset
        return f"ws_CO_{self._rng.randrange(10**17, 10**18)}"

    def _determine_scenario(self, phone: str) -> SimulatorScenario:
        if phone == self.PHONE_REJECTED:
            return SimulatorScenario.REJECTED
        if phone == self.PHONE_HANG:
            return SimulatorScenario.HANG
        if self._rng.random() >= self.config.success_rate:
            return SimulatorScenario.REJECTED
        return SimulatorScenario.SUCCESS

    async def get_token(self) -> str:
        """Return a fixed token, or fail when configured to."""
        await self._apply_delay()
        self.token_requests += 1
        if self.config.fail_auth:
            raise AuthError("Failed to get M-Pesa access token.")
        return self.TOKEN

    async def initiate_stk_push(self, request: StkPushRequest, token: str) -> StkPushResponse:
        """Accept, reject, or hang on a simulated STK push."""
        await self._apply_delay()
        if token != self.TOKEN:
            raise GatewayError("Invalid Access Token", detail="404.001.03", status_code=401)

        scenario = self._determine_scenario(request.phone)

        if scenario == SimulatorScenario.HANG:
            # Never answers; callers are expected to time out
            await asyncio.Event().wait()

        if scenario == SimulatorScenario.REJECTED:
            error = {
                "requestId": f"sim-{self._rng.randrange(10**6)}",
                "errorCode": "500.001.1001",
                "errorMessage": "Unable to lock subscriber, a transaction is already in process for the current subscriber",
            }
            raise GatewayError(error["errorMessage"], detail=error["errorCode"], response=error, status_code=500)

        checkout_request_id = self._next_checkout_id()
        merchant_request_id = f"{self._rng.randrange(10**4, 10**5)}-{self._rng.randrange(10**6, 10**7)}-1"
        self._pushes[checkout_request_id] = SimulatedPush(
            checkout_request_id=checkout_request_id,
            merchant_request_id=merchant_request_id,
            phone=request.phone,
            amount=request.amount,
            body=request.model_dump(),
        )

        return StkPushResponse.from_daraja({
            "MerchantRequestID": merchant_request_id,
            "CheckoutRequestID": checkout_request_id,
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        })

    def build_callback(
        self,
        checkout_request_id: str,
        result_code: int = 0,
        result_desc: Optional[str] = None,
        receipt_number: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Build the webhook body Daraja would send for a push.

        Unknown tracking identifiers still produce a well-formed payload, which
        is useful for exercising unmatched callbacks.
        """
        push = self._pushes.get(checkout_request_id)
        callback: Dict[str, Any] = {
            "MerchantRequestID": push.merchant_request_id if push else "0000-0000000-1",
            "CheckoutRequestID": checkout_request_id,
            "ResultCode": result_code,
            "ResultDesc": result_desc or (
                "The service request is processed successfully."
                if result_code == 0 else "Request cancelled by user"
            ),
        }
        if result_code == 0:
            callback["CallbackMetadata"] = {
                "Item": [
                    {"Name": "Amount", "Value": push.amount if push else 1},
                    {"Name": "MpesaReceiptNumber", "Value": receipt_number or f"SIM{self._rng.randrange(10**6, 10**7)}"},
                    {"Name": "Balance"},
                    {"Name": "TransactionDate", "Value": int(datetime.now().strftime("%Y%m%d%H%M%S"))},
                    {"Name": "PhoneNumber", "Value": int(push.phone) if push else 254700000000},
                ]
            }
        return {"Body": {"stkCallback": callback}}

    def get_push(self, checkout_request_id: str) -> Optional[SimulatedPush]:
        """Get an accepted push (for testing)."""
        return self._pushes.get(checkout_request_id)

    def get_all_pushes(self) -> List[SimulatedPush]:
        """Get all accepted pushes in arrival order (for testing)."""
        return list(self._pushes.values())

    def health_check(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "gateway": self.name,
            "push_count": len(self._pushes),
            "config": {
                "success_rate": self.config.success_rate,
                "delay_ms": self.config.delay_ms,
                "fail_auth": self.config.fail_auth,
            },
        }
