import pytest

from funnel.errors import SignatureInvalid
from funnel.webhooks.signature import compute_signature, sign, verify_signature

BODY = b'{"event_type":"transaction.sale.success","event_body":{"transaction_id":"T1"}}'


def test_valid_signature_accepted():
    headers = {"x-nmi-signature": compute_signature("s3cret", BODY)}
    assert verify_signature("nmi", BODY, headers, secret="s3cret", production=True) is True


def test_tampered_body_rejected():
    headers = {"x-nmi-signature": compute_signature("s3cret", BODY)}
    tampered = BODY.replace(b"T1", b"T2")
    with pytest.raises(SignatureInvalid):
        verify_signature("nmi", tampered, headers, secret="s3cret", production=False)


def test_missing_header_rejected_when_secret_configured():
    with pytest.raises(SignatureInvalid):
        verify_signature("nmi", BODY, {}, secret="s3cret", production=False)


def test_permissive_without_secret_outside_production():
    assert verify_signature("nmi", BODY, {}, secret="", production=False) is True


def test_no_secret_in_production_rejected():
    with pytest.raises(SignatureInvalid):
        verify_signature("nmi", BODY, {}, secret="", production=True)


def test_konnective_prefixed_signature():
    headers = {"x-konnective-signature": sign("konnective", "k-secret", BODY)}
    assert headers["x-konnective-signature"].startswith("sha256=")
    assert verify_signature("konnective", BODY, headers, secret="k-secret", production=True)


def test_secret_read_from_config(monkeypatch):
    monkeypatch.setattr("funnel.config.NMI_WEBHOOK_SECRET", "from-config")
    with pytest.raises(SignatureInvalid):
        verify_signature("nmi", BODY, {"x-nmi-signature": "deadbeef"}, production=False)
    headers = {"x-nmi-signature": compute_signature("from-config", BODY)}
    assert verify_signature("nmi", BODY, headers, production=False)
