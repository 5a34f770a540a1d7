import httpx
import pytest

from conftest import GATEWAY_URL, approved, declined, timeout_response
from funnel.errors import ConfigurationError, GatewayDeclined, GatewayUnavailable, VaultError
from funnel.gateway import GatewayClient, SaleRequest


def test_sale_approved_posts_form_fields(gateway, gateway_script):
    gateway_script.queue(approved("T1", "V1"))
    result = gateway.sale(SaleRequest(amount=25, payment_token="tok"))
    assert result.approved
    assert result.transaction_id == "T1"
    assert gateway_script.last["security_key"] == "test-key"
    assert gateway_script.last["amount"] == "25.00"


def test_sale_declined_raises_classified_error(gateway, gateway_script):
    gateway_script.queue(declined("202", "Insufficient funds"))
    with pytest.raises(GatewayDeclined) as exc:
        gateway.sale(SaleRequest(amount=25, payment_token="tok"))
    assert exc.value.reason.value == "insufficient_funds"


def test_sale_via_vault_expired_card_is_vault_error(gateway, gateway_script):
    gateway_script.queue(declined("223", "Expired card"))
    with pytest.raises(VaultError):
        gateway.sale(SaleRequest(amount=25, vault_id="V1"))


def test_timeout_is_unconfirmed(gateway, gateway_script):
    gateway_script.queue(timeout_response)
    with pytest.raises(GatewayUnavailable) as exc:
        gateway.sale(SaleRequest(amount=25, payment_token="tok"))
    assert exc.value.unconfirmed is True


def test_connection_error_is_unavailable(gateway, gateway_script):
    gateway_script.queue(httpx.ConnectError("refused"))
    with pytest.raises(GatewayUnavailable) as exc:
        gateway.sale(SaleRequest(amount=25, payment_token="tok"))
    assert exc.value.unconfirmed is False


def test_http_error_status_is_unavailable(gateway, gateway_script):
    gateway_script.queue(lambda request: httpx.Response(502, text="bad gateway"))
    with pytest.raises(GatewayUnavailable):
        gateway.sale(SaleRequest(amount=25, payment_token="tok"))


def test_missing_security_key_is_configuration_error():
    client = GatewayClient(security_key="", endpoint=GATEWAY_URL)
    try:
        with pytest.raises(ConfigurationError):
            client.sale(SaleRequest(amount=25, payment_token="tok"))
        assert client.health_info()["configured"] is False
    finally:
        client.close()


def test_update_vault_keeps_vault_id(gateway, gateway_script):
    gateway_script.queue(approved("", vault_id=""))
    result = gateway.update_vault(vault_id="V9", payment_token="tok_new")
    assert result.vault_id == "V9"
    assert gateway_script.last["customer_vault"] == "update_customer"
