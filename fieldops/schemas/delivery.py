"""
Delivery result - uniform return value of every outbound adapter
(text, call, chat message, payment link).
"""
from typing import Optional


class DeliveryResult:
    """Outcome of one delivery attempt. Adapters never raise for provider failures."""

    def __init__(
        self,
        success: bool,
        provider_id: Optional[str] = None,
        error: Optional[str] = None,
        url: Optional[str] = None,
    ):
        self.success = success
        self.provider_id = provider_id
        self.error = error
        self.url = url

    @classmethod
    def ok(cls, provider_id: Optional[str] = None, url: Optional[str] = None) -> "DeliveryResult":
        return cls(True, provider_id=provider_id, url=url)

    @classmethod
    def failed(cls, error: str) -> "DeliveryResult":
        return cls(False, error=error)

    def __bool__(self) -> bool:
        return self.success

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "provider_id": self.provider_id,
            "error": self.error,
            "url": self.url,
        }

    def __repr__(self) -> str:
        status = "OK" if self.success else "FAILED"
        return f"<DeliveryResult {status}: {self.provider_id or self.error}>"
