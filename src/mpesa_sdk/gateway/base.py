import re
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

INTEGER_PATTERN = re.compile(r"^-?\d+$")


# Canonical models
class StkPushRequest(BaseModel):
    phone: str  # normalized 2547XXXXXXXX form
    amount: int  # whole shillings
    account_reference: str = "Donation"
    transaction_desc: str = "Donation"


class StkPushResponse(BaseModel):
    merchant_request_id: Optional[str] = None
    checkout_request_id: str
    response_code: str = "0"
    response_description: Optional[str] = None
    customer_message: Optional[str] = None
    raw_gateway_response: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_daraja(cls, data: Dict[str, Any]) -> "StkPushResponse":
        return cls(
            merchant_request_id=data.get("MerchantRequestID"),
            checkout_request_id=data["CheckoutRequestID"],
            response_code=str(data.get("ResponseCode", "")),
            response_description=data.get("ResponseDescription"),
            customer_message=data.get("CustomerMessage"),
            raw_gateway_response=data,
        )


class StkCallback(BaseModel):
    """Result notification for a single STK push, as sent by the gateway."""
    model_config = ConfigDict(populate_by_name=True)

    merchant_request_id: Optional[str] = Field(default=None, alias="MerchantRequestID")
    checkout_request_id: str = Field(..., alias="CheckoutRequestID", min_length=1)
    result_code: int = Field(..., alias="ResultCode")
    result_desc: Optional[str] = Field(default=None, alias="ResultDesc")
    # CallbackMetadata items flattened to Name -> Value
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("result_code", mode="before")
    @classmethod
    def reject_non_integer_result_code(cls, value: Any) -> Any:
        if isinstance(value, (bool, float)):
            raise ValueError("ResultCode must be an integer")
        if isinstance(value, str) and not INTEGER_PATTERN.match(value.strip()):
            raise ValueError("ResultCode must be an integer")
        return value

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0

    @property
    def receipt_number(self) -> Optional[str]:
        receipt = self.metadata.get("MpesaReceiptNumber")
        return str(receipt) if receipt is not None else None


class TokenProvider(ABC):
    """Source of bearer tokens for the gateway API."""

    @abstractmethod
    async def get_token(self) -> str:
        """
        Return a valid access token. Raises AuthError if the exchange fails.
        """
        raise NotImplementedError

    def invalidate(self) -> None:
        """Forget any cached token."""


class StkPushGateway(ABC):
    """
    Minimal STK push interface. Implementations translate a canonical request
    into the gateway's wire format and back, raising GatewayError on rejection.
    """

    name = "base"

    @abstractmethod
    async def initiate_stk_push(self, request: StkPushRequest, token: str) -> StkPushResponse:
        """
        Send the payment prompt to the payer's phone. Returns once the gateway
        has acknowledged the request; the payment result arrives later as a callback.
        """
        raise NotImplementedError

    def health_check(self) -> Dict[str, Any]:
        return {"ok": True, "gateway": self.name}

    async def aclose(self) -> None:
        """Release network resources held by the gateway."""
