"""Defensive parsing of STK push result callbacks."""

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from .base import StkCallback

logger = logging.getLogger(__name__)

# Fixed acknowledgement body returned for every callback
CALLBACK_ACK = "Callback received successfully."


def _flatten_metadata(metadata: Any) -> Dict[str, Any]:
    """Flatten ``CallbackMetadata.Item`` into a Name -> Value mapping.

    Entries that are not well formed are skipped; metadata never decides
    whether a callback is accepted.
    """
    if not isinstance(metadata, dict):
        return {}
    items = metadata.get("Item")
    if not isinstance(items, list):
        return {}

    flattened = {}
    for item in items:
        if isinstance(item, dict) and isinstance(item.get("Name"), str):
            flattened[item["Name"]] = item.get("Value")
    return flattened


def parse_stk_callback(payload: Any) -> Optional[StkCallback]:
    """Extract the STK callback from a decoded webhook body.

    Args:
        payload: Decoded JSON body, expected as
            ``{"Body": {"stkCallback": {"CheckoutRequestID": ..., "ResultCode": ...}}}``.

    Returns:
        The parsed callback, or None if the payload is malformed.
    """
    if not isinstance(payload, dict):
        return None
    body = payload.get("Body")
    if not isinstance(body, dict):
        return None
    callback = body.get("stkCallback")
    if not isinstance(callback, dict):
        return None

    try:
        parsed = StkCallback.model_validate(callback)
    except PydanticValidationError as e:
        logger.debug(f"Rejected callback fields: {e.errors()}")
        return None

    parsed.metadata = _flatten_metadata(callback.get("CallbackMetadata"))
    return parsed
