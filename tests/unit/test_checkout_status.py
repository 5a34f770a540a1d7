import pytest

from funnel.checkout.status import PollContract, PollState, StatusPoller, describe_status, poll_state_of
from funnel.sessions.models import SessionStatus


def test_contract_backoff_is_capped():
    contract = PollContract(interval=2, backoff=1.5, max_interval=10, max_attempts=20)
    assert contract.delay_for(1) == 2
    assert contract.delay_for(2) == 3
    assert contract.delay_for(3) == 4.5
    assert contract.delay_for(10) == 10
    public = contract.to_public_dict()
    assert public["intervalMs"] == 2000
    assert public["terminalStates"] == ["completed", "failed", "not_found"]


@pytest.mark.parametrize("status,state", [
    ("completed", PollState.COMPLETED),
    ("failed", PollState.FAILED),
    (None, PollState.NOT_FOUND),
    ("processing", PollState.PENDING),
    ("initiated", PollState.PENDING),
])
def test_poll_state_of(status, state):
    assert poll_state_of(status) == state


def test_poller_stops_on_terminal_state():
    responses = iter([{"status": "processing"}, {"status": "processing"}, {"status": "completed"}])
    delays = []
    result = StatusPoller(lambda: next(responses), PollContract(), sleep=delays.append).run()
    assert result.state == PollState.COMPLETED
    assert result.attempts == 3
    assert delays == [2.0, 3.0]


def test_poller_not_found_is_terminal():
    result = StatusPoller(lambda: None, PollContract(), sleep=lambda _s: None).run()
    assert result.state == PollState.NOT_FOUND
    assert result.attempts == 1


def test_poller_tolerates_transient_errors_and_exhausts():
    calls = {"n": 0}

    def _fetch():
        calls["n"] += 1
        if calls["n"] % 2:
            raise ConnectionError("network down")
        return {"status": "processing"}

    result = StatusPoller(_fetch, PollContract(max_attempts=4), sleep=lambda _s: None).run()
    assert result.state == PollState.EXHAUSTED
    assert result.attempts == 4
    assert len(result.errors) == 2


def test_describe_status(container, completed_session):
    payload = describe_status(completed_session, container.poll_contract)
    assert payload["state"] == "completed"
    assert payload["currentStep"] == "upsell-1"
    assert payload["nextStep"].startswith("/upsell/1?")
    assert payload["estimatedWaitTime"] == 0

    failed = container.store.create({"email": "x@example.com"})
    container.store.set_status(failed.id, SessionStatus.PROCESSING)
    container.store.set_status(failed.id, SessionStatus.FAILED)
    payload = describe_status(container.store.get(failed.id), container.poll_contract)
    assert payload["state"] == "failed"
    assert payload["nextStep"] == "/checkout?retry=true"
