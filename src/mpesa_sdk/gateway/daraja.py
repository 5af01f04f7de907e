"""Safaricom Daraja adapters: OAuth token exchange and STK push."""

import asyncio
import base64
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from ..errors import AuthError, GatewayError, GatewayTimeoutError
from .base import TokenProvider, StkPushGateway, StkPushRequest, StkPushResponse

logger = logging.getLogger(__name__)

# Daraja validates the STK password against East Africa Time
EAT = timezone(timedelta(hours=3), name="EAT")

TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
DEFAULT_TOKEN_TTL = 3599
# Refresh tokens this many seconds before Daraja expires them
TOKEN_EXPIRY_MARGIN = 60


def basic_auth_header(consumer_key: str, consumer_secret: str) -> str:
    """Build the Basic authorization header for the token endpoint."""
    raw = f"{consumer_key}:{consumer_secret}".encode("utf-8")
    return f"Basic {base64.b64encode(raw).decode('ascii')}"


def stk_timestamp(now: Optional[datetime] = None) -> str:
    """Format a timestamp as Daraja expects (YYYYMMDDHHmmss, EAT)."""
    now = now or datetime.now(EAT)
    if now.tzinfo is not None:
        now = now.astimezone(EAT)
    return now.strftime(TIMESTAMP_FORMAT)


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """Derive the STK push password: base64(shortcode + passkey + timestamp)."""
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode("utf-8")).decode("ascii")


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class DarajaTokenProvider(TokenProvider):
    """
    OAuth client-credentials exchange against Daraja. Tokens are cached until
    shortly before they expire; concurrent callers share a single refresh.
    """

    def __init__(
        self,
        consumer_key: str,
        consumer_secret: str,
        auth_url: str,
        http_client: httpx.AsyncClient,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._auth_header = basic_auth_header(consumer_key, consumer_secret)
        self.auth_url = auth_url
        self._client = http_client
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    def _cached(self) -> Optional[str]:
        if self._token and self._clock() < self._expires_at:
            return self._token
        return None

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0

    async def get_token(self) -> str:
        token = self._cached()
        if token:
            return token

        async with self._lock:
            token = self._cached()
            if token:
                return token
            token, expires_in = await self._fetch_token()
            self._token = token
            self._expires_at = self._clock() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0)
            return token

    async def _fetch_token(self) -> Tuple[str, int]:
        try:
            response = await self._client.get(
                self.auth_url,
                headers={"Authorization": self._auth_header},
            )
        except httpx.TimeoutException as e:
            logger.error("Timed out getting M-Pesa access token")
            raise GatewayTimeoutError("Timed out getting M-Pesa access token.") from e
        except httpx.HTTPError as e:
            logger.error(f"Error getting M-Pesa access token: {e}")
            raise AuthError("Failed to get M-Pesa access token.") from e

        if response.is_error:
            logger.error(f"Error getting M-Pesa access token: HTTP {response.status_code}")
            raise AuthError("Failed to get M-Pesa access token.")

        data = _json_or_empty(response)
        token = data.get("access_token")
        if not token:
            logger.error("M-Pesa token response did not contain an access token")
            raise AuthError("Failed to get M-Pesa access token.")

        try:
            expires_in = int(data.get("expires_in", DEFAULT_TOKEN_TTL))
        except (TypeError, ValueError):
            expires_in = DEFAULT_TOKEN_TTL
        return token, expires_in


class DarajaGateway(StkPushGateway):
    """
    STK push (Lipa na M-Pesa Online) against the Daraja process-request API.
    """

    name = "daraja"

    def __init__(
        self,
        shortcode: str,
        passkey: str,
        callback_url: str,
        stk_push_url: str,
        http_client: httpx.AsyncClient,
        clock: Optional[Callable[[], datetime]] = None,
        owns_client: bool = False,
    ):
        self.shortcode = shortcode
        self.passkey = passkey
        self.callback_url = callback_url
        self.stk_push_url = stk_push_url
        self._client = http_client
        self._clock = clock or (lambda: datetime.now(EAT))
        self._owns_client = owns_client

    def build_request_body(self, request: StkPushRequest) -> Dict[str, Any]:
        """Translate a canonical request into Daraja's JSON body."""
        timestamp = stk_timestamp(self._clock())
        return {
            "BusinessShortCode": self.shortcode,
            "Password": stk_password(self.shortcode, self.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": request.amount,
            "PartyA": request.phone,
            "PartyB": self.shortcode,
            "PhoneNumber": request.phone,
            "CallBackURL": self.callback_url,
            "AccountReference": request.account_reference,
            "TransactionDesc": request.transaction_desc,
        }

    async def initiate_stk_push(self, request: StkPushRequest, token: str) -> StkPushResponse:
        body = self.build_request_body(request)
        try:
            response = await self._client.post(
                self.stk_push_url,
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as e:
            raise GatewayTimeoutError("STK Push request timed out.") from e
        except httpx.HTTPError as e:
            raise GatewayError("Failed to initiate STK Push.", detail=str(e)) from e

        data = _json_or_empty(response)
        if response.is_error:
            logger.warning(f"STK Push API error (HTTP {response.status_code}): {data}")
            raise GatewayError(
                data.get("errorMessage") or "Failed to initiate STK Push.",
                detail=data.get("errorCode"),
                response=data,
                status_code=response.status_code,
            )

        if str(data.get("ResponseCode", "")) != "0" or not data.get("CheckoutRequestID"):
            logger.warning(f"STK Push not accepted: {data}")
            raise GatewayError(
                data.get("ResponseDescription") or data.get("errorMessage") or "Failed to initiate STK Push.",
                detail=str(data.get("ResponseCode")) if "ResponseCode" in data else None,
                response=data,
                status_code=response.status_code,
            )

        return StkPushResponse.from_daraja(data)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
