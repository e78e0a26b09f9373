"""API dependencies - internal caller authentication"""

from typing import Optional
import hmac

from fastapi import Header

from authcore.config import settings
from authcore.core.exceptions import AuthorizationError


async def require_internal_caller(
    x_internal_key: Optional[str] = Header(None, alias="X-Internal-Key"),
) -> None:
    """
    Reject calls that do not carry the shared internal API key

    Args:
        x_internal_key: Value of the X-Internal-Key header

    Raises:
        AuthorizationError: If the key is missing or wrong
    """
    if not x_internal_key or not hmac.compare_digest(
        x_internal_key.encode("utf-8"), settings.INTERNAL_API_KEY.encode("utf-8")
    ):
        raise AuthorizationError("Internal API key required")


def client_device_info(request, device_info: Optional[dict] = None) -> dict:
    """Fill in the caller's network address when the device info omits it."""
    info = dict(device_info or {})
    if not info.get("ip_address") and getattr(request, "client", None):
        info["ip_address"] = request.client.host
    if not info.get("user_agent"):
        headers = getattr(request, "headers", None) or {}
        user_agent = headers.get("user-agent")
        if user_agent:
            info["user_agent"] = user_agent
    return info
