import pytest

from funnel.errors import GatewayUnavailable, ValidationError
from funnel.gateway import GatewayLineItem, SaleRequest, VaultDirective, build_sale_fields, build_vault_update_fields, decode_response
from funnel.sessions.models import BillingInfo, CustomerInfo


def _customer(**overrides):
    data = dict(email="jane@example.com", first_name="Jane", last_name="Doe", address="1 Main St", city="Los Angeles", state="CA", zip_code="90001")
    data.update(overrides)
    return CustomerInfo(**data)


def test_sale_fields_with_token_and_vault_creation():
    req = SaleRequest(
        amount=108.75,
        payment_token="tok_1",
        vault_directive=VaultDirective.ADD,
        customer=_customer(),
        order_id="order_ws_1",
        tax=8.75,
        shipping=0,
        merchant_fields=["funnel-checkout", "initial-order"],
    )
    fields = build_sale_fields("key", req)
    assert fields["type"] == "sale"
    assert fields["amount"] == "108.75"
    assert fields["payment_token"] == "tok_1"
    assert fields["customer_vault"] == "add_customer"
    assert fields["orderid"] == "order_ws_1"
    assert fields["tax"] == "8.75"
    assert fields["shipping"] == "0.00"
    assert fields["merchant_defined_field_1"] == "funnel-checkout"
    assert "customer_vault_id" not in fields
    assert "ccnumber" not in fields


def test_sale_fields_address_fallback_to_billing():
    req = SaleRequest(
        amount=10,
        vault_id="V1",
        customer=_customer(address="", city="", state="", zip_code=""),
        billing=BillingInfo(address="9 Bill Rd", city="Austin", state="TX", zip_code="73301"),
    )
    fields = build_sale_fields("key", req)
    assert fields["shipping_address1"] == "9 Bill Rd"
    assert fields["address1"] == "9 Bill Rd"
    assert fields["state"] == "TX"


def test_sale_fields_line_items_series():
    req = SaleRequest(
        amount=108.75,
        payment_token="tok",
        line_items=[GatewayLineItem(product_code="FITSPRESSO_6", description="Fitspresso", quantity=2, unit_cost=50, tax_rate=0.0875)],
    )
    fields = build_sale_fields("key", req)
    assert fields["item_product_code_1"] == "FITSPRESSO_6"
    assert fields["item_quantity_1"] == "2"
    assert fields["item_total_amount_1"] == "100.00"
    assert fields["item_tax_amount_1"] == "8.75"
    assert fields["item_tax_rate_1"] == "8.75"


@pytest.mark.parametrize("kwargs,field", [
    ({"amount": 0, "payment_token": "tok"}, "amount"),
    ({"amount": 10}, "payment_token"),
    ({"amount": 10, "payment_token": "tok", "vault_id": "V1"}, "payment_token"),
])
def test_sale_fields_rejects_invalid_requests(kwargs, field):
    with pytest.raises(ValidationError) as exc:
        build_sale_fields("key", SaleRequest(**kwargs))
    assert field in exc.value.fields


def test_vault_update_fields():
    fields = build_vault_update_fields("key", vault_id="V1", payment_token="tok_new", customer=_customer())
    assert fields["customer_vault"] == "update_customer"
    assert fields["customer_vault_id"] == "V1"
    assert fields["payment_token"] == "tok_new"
    assert "type" not in fields


def test_decode_response_approved_with_unknown_fields():
    result = decode_response("response=1&responsetext=SUCCESS&transactionid=T1&response_code=100&customer_vault_id=V1&new_field=x")
    assert result.approved is True
    assert result.transaction_id == "T1"
    assert result.vault_id == "V1"
    assert result.unrecognized == {"new_field": "x"}


def test_decode_response_without_code_uses_response():
    assert decode_response("response=1&responsetext=OK").approved is True
    assert decode_response("response=2&responsetext=DECLINE").approved is False


def test_decode_response_empty_values_become_none():
    result = decode_response("response=2&responsetext=DECLINE&transactionid=&response_code=200")
    assert result.transaction_id is None
    assert result.approved is False


def test_decode_response_unreadable_is_unconfirmed():
    with pytest.raises(GatewayUnavailable) as exc:
        decode_response("<html>Bad gateway</html>")
    assert exc.value.unconfirmed is True
