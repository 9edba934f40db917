"""
Payment gateway result models.

All amounts are integers in the smallest unit of the settlement currency.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class TransactionInitialization(BaseModel):
    authorization_url: str
    access_code: Optional[str] = None
    reference: str


class TransactionVerification(BaseModel):
    """Gateway's view of one transaction; the sole source of truth for success."""

    model_config = ConfigDict(extra="ignore")

    reference: str
    status: str
    amount: int = 0
    currency: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    paid_at: Optional[datetime] = None
    gateway_response: Optional[str] = None
    customer_email: Optional[str] = None

    @property
    def is_successful(self) -> bool:
        return self.status == "success"


class TransactionPage(BaseModel):
    transactions: list[TransactionVerification] = Field(default_factory=list)
    page: int = 1
    per_page: int = 50
    page_count: int = 1
    total: int = 0

    @property
    def has_next(self) -> bool:
        return self.page < self.page_count


class RefundResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    status: str
    transaction_reference: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None


class WebhookEvent(BaseModel):
    """Inbound gateway event; only ``charge.success`` changes order state."""

    model_config = ConfigDict(extra="ignore")

    event: str
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def reference(self) -> Optional[str]:
        return self.data.get("reference")

    @property
    def order_id(self) -> Optional[str]:
        metadata = self.data.get("metadata") or {}
        if isinstance(metadata, dict):
            return metadata.get("order_id")
        return None


class WebhookAck(BaseModel):
    status: str = "success"
    processed: bool = False
