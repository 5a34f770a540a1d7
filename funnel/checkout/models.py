"""
Schémas d'entrée du checkout (pydantic v2, JSON camelCase côté client).
"""
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from funnel.errors import ValidationError
from funnel.sessions.models import BillingInfo, CustomerInfo, LineItem

ZIP_RE = re.compile(r"^\d{5}(-\d{4})?$")
PHONE_RE = re.compile(r"^[0-9+().\-\s]{7,20}$")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class CustomerInput(_CamelModel):
    email: EmailStr
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    phone: Optional[str] = None
    address: str = Field(min_length=1, max_length=200)
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=2, max_length=3)
    zip_code: str
    country: str = "US"

    @field_validator("zip_code")
    @classmethod
    def _zip(cls, v: str) -> str:
        if not ZIP_RE.match(v or ""):
            raise ValueError("ZIP code must be 5 digits (or ZIP+4)")
        return v

    @field_validator("phone")
    @classmethod
    def _phone(cls, v: Optional[str]) -> Optional[str]:
        if v and not PHONE_RE.match(v):
            raise ValueError("Phone number is invalid")
        return v or None

    @field_validator("state")
    @classmethod
    def _state(cls, v: str) -> str:
        return v.upper()

    def to_customer_info(self) -> CustomerInfo:
        return CustomerInfo(**self.model_dump())


class BillingInput(_CamelModel):
    address: str = Field(min_length=1, max_length=200)
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=2, max_length=3)
    zip_code: str
    country: str = "US"

    @field_validator("zip_code")
    @classmethod
    def _zip(cls, v: str) -> str:
        if not ZIP_RE.match(v or ""):
            raise ValueError("ZIP code must be 5 digits (or ZIP+4)")
        return v

    @field_validator("state")
    @classmethod
    def _state(cls, v: str) -> str:
        return v.upper()

    def to_billing_info(self) -> BillingInfo:
        return BillingInfo(**self.model_dump())


class ProductInput(_CamelModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    price: float = Field(gt=0)
    quantity: int = Field(default=1, gt=0)
    description: Optional[str] = None

    def to_line_item(self) -> LineItem:
        return LineItem(**self.model_dump())


class CheckoutRequest(_CamelModel):
    customer_info: CustomerInput
    products: List[ProductInput] = Field(min_length=1)
    payment_token: str = Field(min_length=1)
    billing_info: Optional[BillingInput] = None
    coupon_code: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


def _error_path(loc) -> str:
    return ".".join(str(part) for part in loc if part != "body")


def validate_checkout(payload: Any) -> CheckoutRequest:
    """
    Valide le body du checkout.
    Retourne CheckoutRequest ou lève ValidationError avec {chemin: message} par champ.
    """
    if isinstance(payload, CheckoutRequest):
        return payload
    if not isinstance(payload, dict):
        raise ValidationError({"body": "Request body must be a JSON object"})
    try:
        return CheckoutRequest.model_validate(payload)
    except PydanticValidationError as exc:
        fields: Dict[str, str] = {}
        for err in exc.errors():
            path = _error_path(err.get("loc") or ()) or "body"
            fields.setdefault(path, str(err.get("msg") or "Invalid value").removeprefix("Value error, "))
        raise ValidationError(fields) from exc
