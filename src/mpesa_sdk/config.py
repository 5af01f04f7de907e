"""Runtime configuration loaded from environment variables."""

import os
import logging
from typing import Optional, List

from pydantic import BaseModel, Field

DEFAULT_AUTH_URL = "https://sandbox.safaricom.co.ke/oauth/v1/generate?grant_type=client_credentials"
DEFAULT_STK_PUSH_URL = "https://sandbox.safaricom.co.ke/mpesa/stkpush/v1/processrequest"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Keys required to talk to the real Daraja API
DARAJA_REQUIRED = {
    "consumer_key": "CONSUMER_KEY",
    "consumer_secret": "CONSUMER_SECRET",
    "shortcode": "SHORTCODE",
    "passkey": "PASSKEY",
    "callback_url": "CALLBACK_URL",
}


class MpesaSettings(BaseModel):
    """Gateway credentials and service tuning knobs."""
    gateway: str = Field(default="simulator", description="Gateway backend: daraja or simulator")
    auth_url: str = DEFAULT_AUTH_URL
    stk_push_url: str = DEFAULT_STK_PUSH_URL
    consumer_key: Optional[str] = None
    consumer_secret: Optional[str] = None
    shortcode: Optional[str] = None
    passkey: Optional[str] = None
    callback_url: Optional[str] = None
    account_reference: str = "Donation"
    transaction_desc: str = "Donation"
    request_timeout: float = Field(default=30.0, gt=0, description="Seconds before a gateway call is abandoned")
    stk_push_rate_limit: str = "10/minute"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="Origins allowed to call the API from a browser")
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "MpesaSettings":
        """Build settings from environment variables.

        The Daraja gateway is selected by default only when a consumer key is
        configured; otherwise the in-memory simulator is used.
        """
        consumer_key = os.getenv("CONSUMER_KEY")
        default_gateway = "daraja" if consumer_key else "simulator"
        return cls(
            gateway=os.getenv("MPESA_GATEWAY", default_gateway).lower(),
            auth_url=os.getenv("M_PESA_AUTH_URL", DEFAULT_AUTH_URL),
            stk_push_url=os.getenv("M_PESA_API_URL", DEFAULT_STK_PUSH_URL),
            consumer_key=consumer_key,
            consumer_secret=os.getenv("CONSUMER_SECRET"),
            shortcode=os.getenv("SHORTCODE"),
            passkey=os.getenv("PASSKEY"),
            callback_url=os.getenv("CALLBACK_URL"),
            request_timeout=float(os.getenv("MPESA_REQUEST_TIMEOUT", "30")),
            stk_push_rate_limit=os.getenv("STK_PUSH_RATE_LIMIT", "10/minute"),
            cors_origins=parse_origins(os.getenv("CORS_ORIGINS", "*")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    def missing_daraja_settings(self) -> List[str]:
        """Return the environment variable names still needed for Daraja."""
        return [env for attr, env in DARAJA_REQUIRED.items() if not getattr(self, attr)]

    def validate_for_daraja(self) -> None:
        """Ensure every credential needed by the Daraja gateway is present.

        Raises:
            ValueError: If any required setting is missing.
        """
        missing = self.missing_daraja_settings()
        if missing:
            raise ValueError(f"Missing Daraja configuration: {', '.join(missing)}")


def configure_logging(level: str = "INFO") -> None:
    """Install the SDK's log format on the root logger."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def parse_origins(value: str) -> List[str]:
    """Split a comma-separated CORS_ORIGINS value, dropping blanks."""
    return [origin.strip() for origin in value.split(",") if origin.strip()]
