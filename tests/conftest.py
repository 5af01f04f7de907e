"""Shared test fixtures and configuration."""

import os
import pytest
from typing import Dict, Any

# Keep the module-level app on the simulator regardless of the host environment
os.environ["MPESA_GATEWAY"] = "simulator"

from mpesa_sdk.config import MpesaSettings
from mpesa_sdk.gateway import SimulatorGateway, SimulatorConfig
from mpesa_sdk.services import TransactionService
from mpesa_sdk.store import SequentialIdGenerator, TransactionStore


@pytest.fixture
def store():
    """Create an empty store with predictable identifiers."""
    return TransactionStore(id_generator=SequentialIdGenerator())


@pytest.fixture
def simulator():
    """Create a seeded simulator gateway."""
    return SimulatorGateway(SimulatorConfig(seed=42))


@pytest.fixture
def service(store, simulator):
    """Create a service backed by the simulator with a short timeout."""
    return TransactionService(
        store=store,
        token_provider=simulator,
        gateway=simulator,
        request_timeout=0.5,
    )


@pytest.fixture
def test_settings():
    """Settings for a simulator-backed app."""
    return MpesaSettings(
        gateway="simulator",
        request_timeout=0.5,
        stk_push_rate_limit="100/minute",
    )


@pytest.fixture
def daraja_settings():
    """Complete Daraja settings pointing at sandbox URLs."""
    return MpesaSettings(
        gateway="daraja",
        consumer_key="test_consumer_key",
        consumer_secret="test_consumer_secret",
        shortcode="174379",
        passkey="test_passkey",
        callback_url="https://example.com/stk-callback",
    )


@pytest.fixture
def valid_stk_push_body() -> Dict[str, Any]:
    """Return a valid STK push request body."""
    return {"phone": "254700000000", "amount": 100}


@pytest.fixture
def success_callback() -> Dict[str, Any]:
    """Return a Daraja success callback for ws_CO_1."""
    return {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": "ws_CO_1",
                "ResultCode": 0,
                "ResultDesc": "The service request is processed successfully.",
                "CallbackMetadata": {
                    "Item": [
                        {"Name": "Amount", "Value": 100},
                        {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
                        {"Name": "Balance"},
                        {"Name": "TransactionDate", "Value": 20191219102115},
                        {"Name": "PhoneNumber", "Value": 254700000000},
                    ]
                },
            }
        }
    }


@pytest.fixture
def failure_callback() -> Dict[str, Any]:
    """Return a Daraja cancellation callback for ws_CO_1."""
    return {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": "ws_CO_1",
                "ResultCode": 1032,
                "ResultDesc": "Request cancelled by user",
            }
        }
    }
