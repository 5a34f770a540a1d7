import os

# Variables d'environnement lues à l'import de funnel.config
os.environ.setdefault("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS", "1")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("NMI_SECURITY_KEY", "test-key")

import copy
from typing import Any, Callable, Dict, Generator, List, Union
from unittest.mock import MagicMock
from urllib.parse import parse_qsl, urlencode

import httpx
import pytest
from fastapi.testclient import TestClient

from funnel.app import create_app
from funnel.config import DEFAULT_TAX_RATES
from funnel.container import Container
from funnel.gateway import GatewayClient
from funnel.orders.repository import MemoryOrderRepository
from funnel.sessions.store import MemorySessionStore

GATEWAY_URL = "https://gateway.test/api/transact.php"

CHECKOUT_PAYLOAD: Dict[str, Any] = {
    "customerInfo": {
        "email": "jane@example.com",
        "firstName": "Jane",
        "lastName": "Doe",
        "phone": "555-123-4567",
        "address": "1 Main St",
        "city": "Los Angeles",
        "state": "CA",
        "zipCode": "90001",
    },
    "products": [
        {"id": "FITSPRESSO_6", "name": "Fitspresso 6 Bottles", "price": 100.0, "quantity": 1},
    ],
    "paymentToken": "tok_first_card",
}

# Marquage automatique selon le dossier
def pytest_collection_modifyitems(config, items):
    for item in items:
        nodeid = item.nodeid.replace("\\", "/")
        if "/tests/unit/" in nodeid or nodeid.startswith("tests/unit/"):
            item.add_marker(pytest.mark.unit)
        elif "/tests/integration/" in nodeid or nodeid.startswith("tests/integration/"):
            item.add_marker(pytest.mark.integration)


def nmi_body(**fields: Any) -> str:
    """Réponse Direct Post (form-encoded)."""
    return urlencode({k: "" if v is None else str(v) for k, v in fields.items()})


def approved(transaction_id: str = "T100", vault_id: str = "V100", **extra: Any) -> str:
    fields = {
        "response": "1",
        "responsetext": "SUCCESS",
        "authcode": "123456",
        "transactionid": transaction_id,
        "avsresponse": "Y",
        "cvvresponse": "M",
        "orderid": "",
        "type": "sale",
        "response_code": "100",
        "customer_vault_id": vault_id,
    }
    fields.update(extra)
    return nmi_body(**fields)


def declined(code: str = "200", text: str = "DECLINE", **extra: Any) -> str:
    return nmi_body(response="2", responsetext=text, transactionid="", response_code=code, **extra)


def vault_creation_failed() -> str:
    """Vente refusée parce que le vault client n'a pas pu être créé (add_customer)."""
    return nmi_body(response="3", responsetext="Customer Vault creation failed", transactionid="", response_code="300")


ScriptItem = Union[str, Exception, Callable[[httpx.Request], httpx.Response]]


class ScriptedGateway:
    """
    Passerelle scriptée pour httpx.MockTransport.
    - chaque appel consomme la réponse suivante du script (body texte, exception ou callable)
    - les champs postés sont conservés dans requests (dict par appel)
    """

    def __init__(self):
        self.script: List[ScriptItem] = []
        self.requests: List[Dict[str, str]] = []

    def queue(self, *items: ScriptItem) -> "ScriptedGateway":
        self.script.extend(items)
        return self

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(dict(parse_qsl(request.content.decode("utf-8"), keep_blank_values=True)))
        if not self.script:
            raise AssertionError("Unexpected gateway call")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(request)
        return httpx.Response(200, text=item)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    @property
    def last(self) -> Dict[str, str]:
        return self.requests[-1]


def timeout_response(request: httpx.Request) -> httpx.Response:
    raise httpx.ReadTimeout("timed out", request=request)


@pytest.fixture()
def gateway_script() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture()
def gateway(gateway_script) -> Generator[GatewayClient, None, None]:
    client = GatewayClient(
        security_key="test-key",
        endpoint=GATEWAY_URL,
        timeout=5.0,
        http_client=httpx.Client(transport=gateway_script.transport()),
    )
    yield client
    client.close()


@pytest.fixture()
def container(gateway) -> Container:
    return Container(
        store=MemorySessionStore(),
        gateway=gateway,
        orders=MemoryOrderRepository(),
        tax_rates=DEFAULT_TAX_RATES,
    )


@pytest.fixture()
def checkout_payload() -> Dict[str, Any]:
    return copy.deepcopy(CHECKOUT_PAYLOAD)


@pytest.fixture()
def completed_session(container, gateway_script, checkout_payload):
    """Session ayant terminé le checkout (vault V100, transaction T100)."""
    gateway_script.queue(approved("T100", "V100"))
    outcome = container.checkout.process(checkout_payload)
    return container.store.get(outcome.session_id)


@pytest.fixture()
def app(container):
    application = create_app()
    application.state.container = container
    return application


@pytest.fixture()
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as c:
        yield c


# Aucun accès Supabase réel pendant les tests
@pytest.fixture(scope="function", autouse=True)
def mock_supabase(monkeypatch):
    monkeypatch.setattr("funnel.infra.supabase_client.get_service_supabase", lambda: MagicMock())
