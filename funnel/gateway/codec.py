"""
Encodage/décodage du protocole Direct Post (form-encoded dans les deux sens).

- build_sale_fields: requête de vente (token one-shot ou vault), adresses, champs marchand, lignes
- build_vault_update_fields: mise à jour du vault (update_customer) avec un nouveau token
- decode_response: décode puis valide la réponse plate en GatewayResult
"""
from typing import Dict, List, Optional
from urllib.parse import parse_qsl

from pydantic import ValidationError as PydanticValidationError

from funnel.errors import GatewayUnavailable, ValidationError
from funnel.gateway.models import (
    SUCCESS_RESPONSE_CODE,
    GatewayLineItem,
    GatewayResult,
    SaleRequest,
    VaultDirective,
)
from funnel.sessions.models import BillingInfo, CustomerInfo

# Champs connus de la réponse -> attribut GatewayResult
RESPONSE_FIELDS = {
    "response": "response",
    "response_code": "response_code",
    "responsetext": "response_text",
    "transactionid": "transaction_id",
    "authcode": "auth_code",
    "customer_vault_id": "vault_id",
    "avsresponse": "avs_response",
    "cvvresponse": "cvv_response",
    "orderid": "order_id",
    "type": "transaction_type",
}
# Champs connus mais sans attribut dédié (restent dans raw_response)
KNOWN_PASSTHROUGH = {"cc_number", "cc_exp", "error", "error_code"}

MAX_MERCHANT_FIELDS = 20


def _money(value: float) -> str:
    return f"{float(value):.2f}"


def _customer_fields(data: Dict[str, str], customer: Optional[CustomerInfo]) -> None:
    if not customer:
        return
    data["email"] = customer.email
    data["first_name"] = customer.first_name
    data["last_name"] = customer.last_name
    if customer.phone:
        data["phone"] = customer.phone


def _address_fields(
    data: Dict[str, str],
    customer: Optional[CustomerInfo],
    billing: Optional[BillingInfo],
) -> None:
    """
    Adresses avec repli dans les deux sens:
    - livraison: adresse client, sinon adresse de facturation
    - facturation: adresse de facturation, sinon adresse client
    """
    has_shipping = bool(customer and (customer.address or "").strip())
    has_billing = bool(billing and (billing.address or "").strip())

    if customer and (has_shipping or has_billing):
        source = customer if has_shipping else billing
        data["shipping_firstname"] = customer.first_name
        data["shipping_lastname"] = customer.last_name
        data["shipping_address1"] = source.address
        data["shipping_city"] = source.city or ""
        data["shipping_state"] = source.state or ""
        data["shipping_zip"] = source.zip_code or ""
        data["shipping_country"] = source.country or "US"
        if customer.phone:
            data["shipping_phone"] = customer.phone

    if has_billing or has_shipping:
        source = billing if has_billing else customer
        data["address1"] = source.address
        data["city"] = source.city or ""
        data["state"] = source.state or ""
        data["zip"] = source.zip_code or ""
        data["country"] = source.country or "US"


def _merchant_fields(data: Dict[str, str], values: List[str]) -> None:
    for index, value in enumerate(values[:MAX_MERCHANT_FIELDS], start=1):
        if value is not None and str(value) != "":
            data[f"merchant_defined_field_{index}"] = str(value)


def _line_item_fields(data: Dict[str, str], items: List[GatewayLineItem]) -> None:
    # Série indexée item_*_N (données niveau 3)
    for index, item in enumerate(items, start=1):
        total = round(item.unit_cost * item.quantity - item.discount_amount, 2)
        tax_amount = round(total * item.tax_rate, 2)
        data[f"item_product_code_{index}"] = item.product_code
        data[f"item_description_{index}"] = item.description
        data[f"item_quantity_{index}"] = str(item.quantity)
        data[f"item_unit_cost_{index}"] = _money(item.unit_cost)
        data[f"item_unit_of_measure_{index}"] = item.unit_of_measure
        data[f"item_total_amount_{index}"] = _money(total)
        data[f"item_tax_amount_{index}"] = _money(tax_amount)
        data[f"item_tax_rate_{index}"] = f"{item.tax_rate * 100:.2f}"
        data[f"item_commodity_code_{index}"] = item.commodity_code
        data[f"item_discount_amount_{index}"] = _money(item.discount_amount)


def build_sale_fields(security_key: str, request: SaleRequest) -> Dict[str, str]:
    """
    Construit les champs d'une vente.
    - exactement une source de paiement: payment_token (jamais de numéro de carte) ou vault_id
      (update_customer accepte les deux: nouveau token pour un vault existant)
    """
    if request.amount <= 0:
        raise ValidationError({"amount": "Amount must be greater than 0"})
    if not request.payment_token and not request.vault_id:
        raise ValidationError({"payment_token": "A payment token or a vault id is required"})
    if request.payment_token and request.vault_id and request.vault_directive != VaultDirective.UPDATE:
        raise ValidationError({"payment_token": "Use either a payment token or a vault id"})

    data: Dict[str, str] = {
        "security_key": security_key,
        "type": "sale",
        "amount": _money(request.amount),
    }
    if request.payment_token:
        data["payment_token"] = request.payment_token
    if request.vault_id:
        data["customer_vault_id"] = request.vault_id
    if request.vault_directive:
        data["customer_vault"] = request.vault_directive.value
    if request.order_id:
        data["orderid"] = request.order_id
        data["ponumber"] = request.order_id
    if request.tax is not None:
        data["tax"] = _money(request.tax)
    if request.shipping is not None:
        data["shipping"] = _money(request.shipping)

    _customer_fields(data, request.customer)
    _address_fields(data, request.customer, request.billing)
    _merchant_fields(data, request.merchant_fields)
    _line_item_fields(data, request.line_items)
    return data


def build_vault_update_fields(
    security_key: str,
    *,
    vault_id: str,
    payment_token: str,
    customer: Optional[CustomerInfo] = None,
    billing: Optional[BillingInfo] = None,
    merchant_fields: Optional[List[str]] = None,
) -> Dict[str, str]:
    """Mise à jour du vault: remplace la carte stockée par celle du nouveau token."""
    if not vault_id:
        raise ValidationError({"vault_id": "Vault id is required"})
    if not payment_token:
        raise ValidationError({"payment_token": "Payment token is required"})
    data: Dict[str, str] = {
        "security_key": security_key,
        "customer_vault": VaultDirective.UPDATE.value,
        "customer_vault_id": vault_id,
        "payment_token": payment_token,
    }
    _customer_fields(data, customer)
    _address_fields(data, customer, billing)
    _merchant_fields(data, list(merchant_fields or []))
    return data


def decode_response(body: str) -> GatewayResult:
    """
    Décode la réponse plate (clé=valeur&...) puis valide:
    - response absent -> réponse inexploitable (GatewayUnavailable, non confirmée)
    - approved: response_code == "100", ou response == "1" si aucun code n'est fourni
    """
    raw: Dict[str, str] = dict(parse_qsl((body or "").strip(), keep_blank_values=True))
    if "response" not in raw and "response_code" not in raw:
        raise GatewayUnavailable("Unreadable gateway response", unconfirmed=True, context={"body": (body or "")[:200]})

    values: Dict[str, Optional[str]] = {}
    unrecognized: Dict[str, str] = {}
    for key, value in raw.items():
        attr = RESPONSE_FIELDS.get(key)
        if attr:
            values[attr] = value
        elif key not in KNOWN_PASSTHROUGH:
            unrecognized[key] = value

    code = values.get("response_code") or ""
    response = values.get("response") or ""
    approved = code == SUCCESS_RESPONSE_CODE if code else response == "1"

    for optional in ("transaction_id", "auth_code", "vault_id", "avs_response", "cvv_response", "order_id", "transaction_type"):
        if optional in values and not values[optional]:
            values[optional] = None

    try:
        return GatewayResult(
            approved=approved,
            raw_response=raw,
            unrecognized=unrecognized,
            **values,
        )
    except PydanticValidationError as exc:
        raise GatewayUnavailable("Invalid gateway response", unconfirmed=True, context={"errors": str(exc)}) from exc
