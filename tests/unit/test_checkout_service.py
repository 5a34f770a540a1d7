import pytest

from conftest import approved, declined, nmi_body, timeout_response, vault_creation_failed
from funnel.checkout.service import PENDING_CHARGE_KEY, UNCONFIRMED_KEY, checkout_order_id
from funnel.errors import ConfigurationError, GatewayDeclined, GatewayUnavailable, ValidationError, VaultError
from funnel.sessions.models import FunnelStep, SessionStatus


def test_checkout_approved_creates_vault_and_moves_to_upsell(container, gateway_script, checkout_payload):
    gateway_script.queue(approved("T100", "V100"))
    outcome = container.checkout.process(checkout_payload)

    assert outcome.status == SessionStatus.COMPLETED
    assert outcome.transaction_id == "T100"
    assert outcome.current_step == FunnelStep.UPSELL_1
    assert outcome.next_step.startswith("/upsell/1?session=")
    assert outcome.totals.total == 108.75

    sent = gateway_script.last
    assert sent["customer_vault"] == "add_customer"
    assert sent["payment_token"] == "tok_first_card"
    assert sent["amount"] == "108.75"
    assert sent["orderid"] == checkout_order_id(outcome.session_id)

    session = container.store.get(outcome.session_id)
    assert session.vault_id == "V100"
    assert session.last_vault_update is not None
    record = container.orders.get(outcome.session_id)
    assert record["main_order"]["transaction_id"] == "T100"
    assert record["customer"]["email"] == "jane@example.com"


def test_checkout_invalid_payload_lists_fields(container, checkout_payload):
    checkout_payload["customerInfo"]["email"] = "not-an-email"
    checkout_payload["customerInfo"]["zipCode"] = "abc"
    checkout_payload["products"] = []
    with pytest.raises(ValidationError) as exc:
        container.checkout.process(checkout_payload)
    fields = exc.value.fields
    assert "customerInfo.email" in fields
    assert "customerInfo.zipCode" in fields
    assert "products" in fields
    assert container.store.stats()["total"] == 0


def test_checkout_declined_marks_session_failed(container, gateway_script, checkout_payload):
    gateway_script.queue(declined("202", "Insufficient funds"))
    with pytest.raises(GatewayDeclined) as exc:
        container.checkout.process(checkout_payload)
    session = container.store.get(exc.value.session_id)
    assert session.status == SessionStatus.FAILED
    assert session.vault_id is None
    assert session.metadata["failure_reason"] == "insufficient_funds"


def test_checkout_timeout_keeps_processing(container, gateway_script, checkout_payload):
    gateway_script.queue(timeout_response)
    with pytest.raises(GatewayUnavailable) as exc:
        container.checkout.process(checkout_payload)
    assert exc.value.unconfirmed is True
    session = container.store.get(exc.value.session_id)
    assert session.status == SessionStatus.PROCESSING
    assert UNCONFIRMED_KEY in session.metadata


def test_checkout_configuration_error_fails_session(container, gateway_script, checkout_payload):
    gateway_script.queue(nmi_body(response="3", responsetext="Authentication Failed", response_code="300"))
    with pytest.raises(ConfigurationError) as exc:
        container.checkout.process(checkout_payload)
    assert container.store.get(exc.value.session_id).status == SessionStatus.FAILED


def test_checkout_duplicate_becomes_synthetic_success(container, gateway_script, checkout_payload):
    gateway_script.queue(nmi_body(response="3", responsetext="Duplicate transaction REFID:555", response_code="430", customer_vault_id="V7"))
    outcome = container.checkout.process(checkout_payload)
    assert outcome.synthetic is True
    assert outcome.transaction_id == "555"
    assert outcome.status == SessionStatus.COMPLETED
    assert container.store.get(outcome.session_id).vault_id == "V7"


def test_checkout_resubmission_replays_first_session(container, gateway_script, checkout_payload):
    gateway_script.queue(approved("T100", "V100"))
    first = container.checkout.process(checkout_payload)
    second = container.checkout.process(checkout_payload)
    assert second.replayed is True
    assert second.session_id == first.session_id
    assert len(gateway_script.requests) == 1
    assert container.store.stats()["total"] == 1


def test_checkout_without_vault_goes_to_success(container, gateway_script, checkout_payload):
    gateway_script.queue(approved("T100", vault_id=""))
    outcome = container.checkout.process(checkout_payload)
    assert outcome.current_step == FunnelStep.SUCCESS
    assert outcome.next_step.startswith("/thankyou")


def test_settle_from_webhook_completes_unconfirmed_sale(container, gateway_script, checkout_payload):
    gateway_script.queue(timeout_response)
    with pytest.raises(GatewayUnavailable) as exc:
        container.checkout.process(checkout_payload)
    session_id = exc.value.session_id

    session = container.checkout.settle_from_webhook(session_id, approved=True, transaction_id="T900", vault_id="V900")
    assert session.status == SessionStatus.COMPLETED
    assert session.transaction_id == "T900"
    assert session.vault_id == "V900"
    assert UNCONFIRMED_KEY not in session.metadata

    # Sans effet une fois terminée
    again = container.checkout.settle_from_webhook(session_id, approved=False, transaction_id=None)
    assert again.status == SessionStatus.COMPLETED


def test_complete_with_new_token_after_pending_charge(container, gateway_script, checkout_payload):
    gateway_script.queue(vault_creation_failed())
    with pytest.raises(VaultError) as exc:
        container.checkout.process(checkout_payload)
    session_id = exc.value.session_id

    gateway_script.queue(approved("T200", "V200"))
    outcome = container.checkout.complete_with_new_token(session_id, "tok_second_card")
    assert outcome.transaction_id == "T200"
    assert gateway_script.last["payment_token"] == "tok_second_card"
    assert PENDING_CHARGE_KEY not in container.store.get(session_id).metadata


def test_checkout_vault_creation_failure_keeps_pending_charge(container, gateway_script, checkout_payload):
    gateway_script.queue(vault_creation_failed())
    with pytest.raises(VaultError) as exc:
        container.checkout.process(checkout_payload)
    assert exc.value.to_dict()["recovery"]["endpoint"] == "/api/v1/vault/recover"

    session = container.store.get(exc.value.session_id)
    assert session.status == SessionStatus.PROCESSING
    assert session.vault_id is None
    assert session.metadata[PENDING_CHARGE_KEY]["kind"] == "checkout"
    assert session.metadata[PENDING_CHARGE_KEY]["recovery_attempted"] is False
