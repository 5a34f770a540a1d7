import pytest

from funnel.errors import ConfigurationError, DeclineReason, GatewayDeclined, GatewayDuplicate, GatewayUnavailable, VaultError
from funnel.gateway import GatewayResult, classify_failure, duplicate_reference, is_duplicate


def _result(code="", text="", response="2", **extra):
    return GatewayResult(approved=False, response=response, response_code=code, response_text=text, **extra)


def test_duplicate_by_code():
    err = classify_failure(_result("430", "Duplicate transaction REFID:987654"))
    assert isinstance(err, GatewayDuplicate)
    assert err.prior_transaction_id == "987654"


def test_duplicate_by_text_without_code():
    result = _result("300", "Duplicate transaction REFID:111")
    assert is_duplicate(result)
    assert duplicate_reference(result) == "111"


@pytest.mark.parametrize("code,text,reason", [
    ("202", "Insufficient funds", DeclineReason.INSUFFICIENT_FUNDS),
    ("200", "NSF", DeclineReason.INSUFFICIENT_FUNDS),
    ("223", "Expired card", DeclineReason.EXPIRED_CARD),
    ("225", "CVV mismatch", DeclineReason.INVALID_CVV),
    ("200", "AVS REJECTED", DeclineReason.INVALID_ADDRESS),
    ("220", "Invalid card number", DeclineReason.INVALID_CARD),
    ("200", "DECLINE", DeclineReason.DECLINED),
])
def test_decline_reasons(code, text, reason):
    err = classify_failure(_result(code, text))
    assert isinstance(err, GatewayDeclined)
    assert err.reason == reason
    assert text not in err.user_message


def test_cvv_mismatch_from_cvv_response():
    err = classify_failure(_result("200", "DECLINE", cvv_response="N"))
    assert err.reason == DeclineReason.INVALID_CVV


def test_configuration_error():
    err = classify_failure(_result("300", "Authentication Failed", response="3"))
    assert isinstance(err, ConfigurationError)
    assert err.status_code == 500


def test_gateway_error_is_unavailable():
    err = classify_failure(_result("420", "Communication error", response="3"))
    assert isinstance(err, GatewayUnavailable)
    assert err.unconfirmed is False
    assert err.retryable is True


def test_vault_error_only_via_vault():
    result = _result("223", "Expired card")
    assert isinstance(classify_failure(result, via_vault=True), VaultError)
    assert isinstance(classify_failure(result, via_vault=False), GatewayDeclined)


def test_invalid_vault_id_via_vault():
    err = classify_failure(_result("300", "Invalid Customer Vault Id", response="3"), via_vault=True)
    assert isinstance(err, VaultError)
    assert err.recovery_required is True


def test_vault_creation_failure_when_add_customer_requested():
    result = _result("300", "Customer Vault creation failed", response="3")
    assert isinstance(classify_failure(result, vault_requested=True), VaultError)
    assert isinstance(classify_failure(result), GatewayDeclined)
    # Un refus ordinaire reste un refus même avec add_customer
    assert isinstance(classify_failure(_result("202", "Insufficient funds"), vault_requested=True), GatewayDeclined)
