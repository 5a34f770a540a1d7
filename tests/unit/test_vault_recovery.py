import pytest

from conftest import approved, declined, vault_creation_failed
from funnel.checkout.service import PENDING_CHARGE_KEY
from funnel.errors import CardRecoveryFailed, SessionStateError, ValidationError, VaultError
from funnel.sessions.models import SessionStatus


@pytest.fixture()
def pending_checkout(container, gateway_script, checkout_payload):
    gateway_script.queue(vault_creation_failed())
    with pytest.raises(VaultError) as exc:
        container.checkout.process(checkout_payload)
    return exc.value.session_id


@pytest.fixture()
def pending_upsell(container, gateway_script, completed_session):
    gateway_script.queue(declined("223", "Expired card"))
    with pytest.raises(VaultError):
        container.upsell.process(completed_session.id, "RC6_144", 1)
    return completed_session.id


def test_recovery_updates_vault_and_charges_pending_upsell_once(container, gateway_script, pending_upsell):
    gateway_script.queue(approved("", vault_id="V555"), approved("U1", "V555"))
    outcome = container.recovery.recover(pending_upsell, "tok_new_card")

    update_call, charge_call = gateway_script.requests[-2:]
    assert update_call["customer_vault"] == "update_customer"
    assert update_call["customer_vault_id"] == "V100"
    assert update_call["payment_token"] == "tok_new_card"
    assert charge_call["customer_vault_id"] == "V555"
    assert "payment_token" not in charge_call

    session = container.store.get(pending_upsell)
    assert session.vault_id == "V555"
    assert session.last_vault_update is not None
    assert [u.product_code for u in session.upsells] == ["RC6_144"]
    assert PENDING_CHARGE_KEY not in session.metadata

    public = outcome.to_public_dict()
    assert public["recovered"] == "upsell"
    assert public["vaultId"] == "V555"
    assert public["transactionId"] == "U1"


def test_recovery_failure_is_terminal(container, gateway_script, pending_upsell):
    gateway_script.queue(declined("200", "DECLINE"))
    with pytest.raises(CardRecoveryFailed) as exc:
        container.recovery.recover(pending_upsell, "tok_bad_card")
    assert exc.value.context["cause"] == "payment_declined"

    session = container.store.get(pending_upsell)
    assert PENDING_CHARGE_KEY not in session.metadata
    assert session.upsells == []

    # La charge abandonnée ne peut pas être relancée une seconde fois
    with pytest.raises(SessionStateError):
        container.recovery.recover(pending_upsell, "tok_other_card")
    assert len(gateway_script.requests) == 3


def test_recovery_already_attempted(container, pending_upsell):
    container.store.mutate(pending_upsell, lambda s: {
        "metadata": {**s.metadata, PENDING_CHARGE_KEY: {**s.metadata[PENDING_CHARGE_KEY], "recovery_attempted": True}}
    })
    with pytest.raises(CardRecoveryFailed):
        container.recovery.recover(pending_upsell, "tok_new_card")


def test_recovery_retry_vault_error_is_not_pending_again(container, gateway_script, pending_upsell):
    gateway_script.queue(approved("", vault_id="V555"), declined("223", "Expired card"))
    with pytest.raises(CardRecoveryFailed) as exc:
        container.recovery.recover(pending_upsell, "tok_new_card")
    assert exc.value.context["cause"] == "vault_error"
    assert PENDING_CHARGE_KEY not in container.store.get(pending_upsell).metadata


def test_recovery_requires_token(container, pending_upsell):
    with pytest.raises(ValidationError):
        container.recovery.recover(pending_upsell, "")


def test_checkout_recovery_completes_session(container, gateway_script, pending_checkout):
    session_id = pending_checkout

    gateway_script.queue(approved("T300", "V300"))
    outcome = container.recovery.recover(session_id, "tok_new_card")
    assert outcome.kind == "checkout"
    assert outcome.vault_id == "V300"
    session = container.store.get(session_id)
    assert session.status == SessionStatus.COMPLETED
    assert gateway_script.last["customer_vault"] == "add_customer"


def test_checkout_recovery_decline_fails_session(container, gateway_script, pending_checkout):
    session_id = pending_checkout

    gateway_script.queue(declined("202", "Insufficient funds"))
    with pytest.raises(CardRecoveryFailed):
        container.recovery.recover(session_id, "tok_new_card")
    session = container.store.get(session_id)
    assert session.status == SessionStatus.FAILED
    assert session.metadata["failure_reason"] == "card_recovery_failed"


def test_update_card_by_session(container, gateway_script, completed_session):
    gateway_script.queue(approved("", vault_id="V100"))
    result = container.recovery.update_card("tok_new", session_id=completed_session.id)
    assert result == {"vault_id": "V100", "session_id": completed_session.id}
    assert gateway_script.last["customer_vault"] == "update_customer"


def test_update_card_by_vault_requires_customer(container, completed_session):
    with pytest.raises(ValidationError) as exc:
        container.recovery.update_card("tok_new", vault_id="V100")
    assert "customerInfo" in exc.value.fields


def test_update_card_by_vault_finds_owner(container, gateway_script, completed_session, checkout_payload):
    gateway_script.queue(approved("", vault_id="V100"))
    result = container.recovery.update_card("tok_new", vault_id="V100", customer_info=checkout_payload["customerInfo"])
    assert result["session_id"] == completed_session.id
    assert gateway_script.last["first_name"] == "Jane"
