"""Payment gateway adapters."""

from typing import Optional, Tuple

import httpx

from ..config import MpesaSettings
from .base import (
    TokenProvider,
    StkPushGateway,
    StkPushRequest,
    StkPushResponse,
    StkCallback,
)
from .callbacks import CALLBACK_ACK, parse_stk_callback
from .daraja import (
    DarajaTokenProvider,
    DarajaGateway,
    stk_password,
    stk_timestamp,
)
from .simulator import (
    SimulatorGateway,
    SimulatorConfig,
    SimulatorScenario,
    SimulatedPush,
)


def get_gateway(
    settings: MpesaSettings,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Tuple[TokenProvider, StkPushGateway]:
    """Factory function returning the token provider and gateway for the settings.

    Args:
        settings: Service settings; ``settings.gateway`` picks the backend.
        http_client: Optional shared client for the Daraja backend. When omitted
            the gateway creates and owns one.

    Returns:
        A ``(token_provider, gateway)`` pair.

    Raises:
        ValueError: If the backend is unknown or Daraja settings are incomplete.
    """
    name = settings.gateway.lower()

    if name == "simulator":
        simulator = SimulatorGateway()
        return simulator, simulator

    if name == "daraja":
        settings.validate_for_daraja()
        owns_client = http_client is None
        client = http_client or httpx.AsyncClient(timeout=settings.request_timeout)
        token_provider = DarajaTokenProvider(
            consumer_key=settings.consumer_key,
            consumer_secret=settings.consumer_secret,
            auth_url=settings.auth_url,
            http_client=client,
        )
        gateway = DarajaGateway(
            shortcode=settings.shortcode,
            passkey=settings.passkey,
            callback_url=settings.callback_url,
            stk_push_url=settings.stk_push_url,
            http_client=client,
            owns_client=owns_client,
        )
        return token_provider, gateway

    raise ValueError(f"Unsupported gateway: {settings.gateway}")


__all__ = [
    # Base classes and models
    "TokenProvider",
    "StkPushGateway",
    "StkPushRequest",
    "StkPushResponse",
    "StkCallback",
    # Callbacks
    "CALLBACK_ACK",
    "parse_stk_callback",
    # Daraja
    "DarajaTokenProvider",
    "DarajaGateway",
    "stk_password",
    "stk_timestamp",
    # Simulator
    "SimulatorGateway",
    "SimulatorConfig",
    "SimulatorScenario",
    "SimulatedPush",
    # Factory
    "get_gateway",
]
