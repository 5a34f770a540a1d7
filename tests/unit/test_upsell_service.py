import threading

import pytest

from conftest import approved, declined, nmi_body
from funnel.checkout.service import PENDING_CHARGE_KEY
from funnel.errors import GatewayDeclined, SessionNotFound, SessionStateError, ValidationError, VaultError
from funnel.sessions.models import FunnelStep
from funnel.upsell.service import upsell_order_id


def test_upsell_charges_vault_with_catalog_price(container, gateway_script, completed_session):
    gateway_script.queue(approved("U1", "V100"))
    outcome = container.upsell.process(completed_session.id, "rc6_144", 1)

    sent = gateway_script.last
    assert sent["customer_vault_id"] == "V100"
    assert "payment_token" not in sent
    assert sent["amount"] == "156.60"
    assert sent["orderid"] == upsell_order_id(completed_session.id, 1)

    assert outcome.accepted is True
    assert outcome.transaction_id == "U1"
    assert outcome.current_step == FunnelStep.UPSELL_2
    assert outcome.next_step.startswith("/upsell/2?")

    session = container.store.get(completed_session.id)
    assert [u.product_code for u in session.upsells] == ["RC6_144"]
    assert session.upsells_accepted == ["RC6_144"]
    assert container.orders.get(completed_session.id)["upsells"][0]["transaction_id"] == "U1"


def test_second_upsell_moves_to_success(container, gateway_script, completed_session):
    gateway_script.queue(approved("U1"), approved("U2"))
    container.upsell.process(completed_session.id, "RC6_144", 1)
    outcome = container.upsell.process(completed_session.id, "SA3_099", 2)
    assert outcome.current_step == FunnelStep.SUCCESS
    assert outcome.next_step.startswith("/thankyou?")


def test_double_submit_charges_once(container, gateway_script, completed_session):
    gateway_script.queue(approved("U1"))
    first = container.upsell.process(completed_session.id, "RC6_144", 1)
    second = container.upsell.process(completed_session.id, "RC6_144", 1)
    assert len(gateway_script.requests) == 2  # checkout + un seul upsell
    assert second.duplicate is True
    assert second.transaction_id == first.transaction_id
    assert len(container.store.get(completed_session.id).upsells) == 1


def test_concurrent_submits_charge_once(container, gateway_script, completed_session):
    gateway_script.queue(approved("U1"))
    results, errors = [], []

    def _submit():
        try:
            results.append(container.upsell.process(completed_session.id, "RC6_144", 1))
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=_submit) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert {r.transaction_id for r in results} == {"U1"}
    assert len(container.store.get(completed_session.id).upsells) == 1


def test_gateway_duplicate_reuses_prior_transaction(container, gateway_script, completed_session):
    gateway_script.queue(nmi_body(response="3", responsetext="Duplicate transaction REFID:777", response_code="430"))
    outcome = container.upsell.process(completed_session.id, "RC6_144", 1)
    assert outcome.transaction_id == "777"
    assert outcome.duplicate is True
    assert len(container.store.get(completed_session.id).upsells) == 1


def test_declined_upsell_is_recorded(container, gateway_script, completed_session):
    gateway_script.queue(declined("202", "Insufficient funds"))
    with pytest.raises(GatewayDeclined) as exc:
        container.upsell.process(completed_session.id, "RC12_296", 1)
    assert exc.value.session_id == completed_session.id
    session = container.store.get(completed_session.id)
    assert session.upsells_declined == ["RC12_296"]
    assert session.upsells == []


def test_vault_error_stores_pending_charge(container, gateway_script, completed_session):
    gateway_script.queue(declined("223", "Expired card"))
    with pytest.raises(VaultError) as exc:
        container.upsell.process(completed_session.id, "RC6_144", 1)
    assert exc.value.to_dict()["recovery"]["endpoint"] == "/api/v1/vault/recover"
    pending = container.store.get(completed_session.id).metadata[PENDING_CHARGE_KEY]
    assert pending["kind"] == "upsell"
    assert pending["step"] == 1
    assert pending["product_code"] == "RC6_144"
    assert pending["recovery_attempted"] is False


def test_unknown_product_and_step_rejected(container, completed_session):
    with pytest.raises(ValidationError):
        container.upsell.process(completed_session.id, "NOPE", 1)
    with pytest.raises(ValidationError):
        container.upsell.process(completed_session.id, "FITSPRESSO_6", 1)
    with pytest.raises(ValidationError):
        container.upsell.process(completed_session.id, "RC6_144", 3)


def test_missing_session(container):
    with pytest.raises(SessionNotFound):
        container.upsell.process("ws_missing", "RC6_144", 1)


def test_session_without_vault_rejected(container, gateway_script, checkout_payload):
    gateway_script.queue(approved("T1", vault_id=""))
    outcome = container.checkout.process(checkout_payload)
    with pytest.raises(SessionStateError):
        container.upsell.process(outcome.session_id, "RC6_144", 1)


def test_step_behind_funnel_rejected(container, gateway_script, completed_session):
    gateway_script.queue(approved("U2"))
    container.upsell.process(completed_session.id, "SA3_099", 2)
    with pytest.raises(SessionStateError):
        container.upsell.process(completed_session.id, "RC6_144", 1)


def test_decline_advances_without_charge(container, gateway_script, completed_session):
    outcome = container.upsell.decline(completed_session.id, "RC12_296", 1)
    assert outcome.accepted is False
    assert outcome.current_step == FunnelStep.UPSELL_2
    assert len(gateway_script.requests) == 1
    assert container.store.get(completed_session.id).upsells_declined == ["RC12_296"]


def test_late_decline_never_moves_funnel_back(container, gateway_script, completed_session):
    container.upsell.decline(completed_session.id, "RC12_296", 1)
    gateway_script.queue(approved("U2"))
    container.upsell.process(completed_session.id, "SA6_149", 2)
    assert container.store.get(completed_session.id).current_step == FunnelStep.SUCCESS

    replay = container.upsell.decline(completed_session.id, "RC12_296", 1)
    assert replay.current_step == FunnelStep.SUCCESS
    assert replay.next_step.startswith("/thankyou?")
    session = container.store.get(completed_session.id)
    assert session.current_step == FunnelStep.SUCCESS
    assert session.upsells_accepted == ["SA6_149"]


def test_repeated_decline_is_recorded_once(container, gateway_script, completed_session):
    gateway_script.queue(approved("U1"))
    container.upsell.process(completed_session.id, "RC6_144", 1)
    first = container.upsell.decline(completed_session.id, "SA6_149", 2)
    second = container.upsell.decline(completed_session.id, "SA6_149", 2)
    assert first.current_step == second.current_step == FunnelStep.SUCCESS
    assert container.store.get(completed_session.id).upsells_declined == ["SA6_149"]
