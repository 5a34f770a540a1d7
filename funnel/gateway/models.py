"""
Types de la passerelle: requête de vente et résultat décodé.
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from funnel.sessions.models import BillingInfo, CustomerInfo

SUCCESS_RESPONSE_CODE = "100"


class VaultDirective(str, Enum):
    ADD = "add_customer"
    UPDATE = "update_customer"


class GatewayLineItem(BaseModel):
    product_code: str
    description: str
    quantity: int = 1
    unit_cost: float
    tax_rate: float = 0.0
    unit_of_measure: str = "EA"
    commodity_code: str = "50202504"
    discount_amount: float = 0.0


class SaleRequest(BaseModel):
    amount: float
    payment_token: Optional[str] = None
    vault_id: Optional[str] = None
    vault_directive: Optional[VaultDirective] = None
    customer: Optional[CustomerInfo] = None
    billing: Optional[BillingInfo] = None
    order_id: Optional[str] = None
    tax: Optional[float] = None
    shipping: Optional[float] = None
    line_items: List[GatewayLineItem] = Field(default_factory=list)
    merchant_fields: List[str] = Field(default_factory=list)


class GatewayResult(BaseModel):
    """
    Réponse décodée de la passerelle.
    - approved: dérivé du code documenté (response_code=100)
    - unrecognized: champs renvoyés que le décodeur ne connaît pas (compat ascendante)
    """
    approved: bool
    response: str = ""
    response_code: str = ""
    response_text: str = ""
    transaction_id: Optional[str] = None
    auth_code: Optional[str] = None
    vault_id: Optional[str] = None
    avs_response: Optional[str] = None
    cvv_response: Optional[str] = None
    order_id: Optional[str] = None
    transaction_type: Optional[str] = None
    raw_response: Dict[str, str] = Field(default_factory=dict)
    unrecognized: Dict[str, str] = Field(default_factory=dict)
    synthetic: bool = False

    @classmethod
    def synthetic_approval(cls, transaction_id: str, *, vault_id: Optional[str] = None, note: str = "") -> "GatewayResult":
        """Résultat approuvé reconstitué (doublon détecté par la passerelle)."""
        return cls(
            approved=True,
            response="1",
            response_code=SUCCESS_RESPONSE_CODE,
            response_text=note or "Duplicate of prior approved transaction",
            transaction_id=transaction_id,
            vault_id=vault_id,
            synthetic=True,
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "approved": self.approved,
            "response_code": self.response_code,
            "transaction_id": self.transaction_id,
            "synthetic": self.synthetic,
        }
