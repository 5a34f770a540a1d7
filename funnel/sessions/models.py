"""
Modèles de données du funnel (pydantic v2).
- CustomerInfo / BillingInfo / LineItem: données saisies au checkout
- UpsellRecord: une offre one-click acceptée et facturée
- FunnelSession: état complet d'un parcours checkout -> upsells -> confirmation
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    INITIATED = "initiated"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Transitions autorisées: initiated -> processing -> {completed, failed}
ALLOWED_TRANSITIONS = {
    SessionStatus.INITIATED: {SessionStatus.PROCESSING},
    SessionStatus.PROCESSING: {SessionStatus.COMPLETED, SessionStatus.FAILED},
    SessionStatus.COMPLETED: set(),
    SessionStatus.FAILED: set(),
}


class FunnelStep(str, Enum):
    CHECKOUT = "checkout"
    PROCESSING = "processing"
    UPSELL_1 = "upsell-1"
    UPSELL_2 = "upsell-2"
    SUCCESS = "success"

    @classmethod
    def for_upsell(cls, step: int) -> "FunnelStep":
        return cls(f"upsell-{step}")

    @property
    def position(self) -> int:
        """Rang dans le parcours (checkout < processing < upsell-1 < upsell-2 < success)."""
        return list(FunnelStep).index(self)


class CustomerInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    address: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = "US"


class BillingInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    address: str
    city: str
    state: str
    zip_code: str
    country: str = "US"


class LineItem(BaseModel):
    id: str
    name: str
    price: float
    quantity: int = 1
    description: Optional[str] = None

    @property
    def line_total(self) -> float:
        return round(self.price * self.quantity, 2)


class UpsellRecord(BaseModel):
    step: int
    product_code: str
    amount: float
    transaction_id: str
    timestamp: datetime = Field(default_factory=utcnow)


class FunnelSession(BaseModel):
    id: str
    email: str
    customer_info: Optional[CustomerInfo] = None
    billing_info: Optional[BillingInfo] = None
    line_items: List[LineItem] = Field(default_factory=list)
    amount: float = 0.0
    subtotal: float = 0.0
    tax: float = 0.0
    shipping: float = 0.0
    status: SessionStatus = SessionStatus.INITIATED
    current_step: FunnelStep = FunnelStep.CHECKOUT
    vault_id: Optional[str] = None
    transaction_id: Optional[str] = None
    upsells_accepted: List[str] = Field(default_factory=list)
    upsells_declined: List[str] = Field(default_factory=list)
    upsells: List[UpsellRecord] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    last_vault_update: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    version: int = 0

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def upsell_for_step(self, step: int) -> Optional[UpsellRecord]:
        for record in self.upsells:
            if record.step == step:
                return record
        return None

    @property
    def last_upsell_step(self) -> int:
        return max((r.step for r in self.upsells), default=0)

    def to_public_dict(self) -> Dict[str, Any]:
        """
        Vue exposée par l'API (camelCase) sans le vault id complet.
        """
        vault = self.vault_id or ""
        return {
            "id": self.id,
            "email": self.email,
            "status": self.status.value,
            "currentStep": self.current_step.value,
            "amount": self.amount,
            "transactionId": self.transaction_id,
            "hasVault": bool(vault),
            "vaultLast4": vault[-4:] if vault else None,
            "upsellsAccepted": list(self.upsells_accepted),
            "upsellsDeclined": list(self.upsells_declined),
            "upsells": [
                {
                    "step": r.step,
                    "productCode": r.product_code,
                    "amount": r.amount,
                    "transactionId": r.transaction_id,
                    "timestamp": r.timestamp.isoformat(),
                }
                for r in self.upsells
            ],
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
        }
