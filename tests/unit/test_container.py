from unittest.mock import MagicMock

from funnel.container import Container, build_order_repository, build_session_store, get_container
from funnel.orders.repository import MemoryOrderRepository, SupabaseOrderRepository
from funnel.sessions.store import MemorySessionStore, RedisSessionStore


def test_build_session_store_backends():
    assert isinstance(build_session_store("memory", ttl_hours=1), MemorySessionStore)
    assert isinstance(build_session_store("redis"), RedisSessionStore)
    assert isinstance(build_session_store("unknown"), MemorySessionStore)


def test_build_order_repository_backends():
    assert isinstance(build_order_repository("supabase"), SupabaseOrderRepository)
    assert isinstance(build_order_repository("memory"), MemoryOrderRepository)


def test_container_wires_services(container):
    assert container.recovery.checkout is container.checkout
    assert container.recovery.upsell is container.upsell
    assert container.reconciliation.store is container.store
    assert container.upsell.max_steps == 2


def test_get_container_builds_once(monkeypatch):
    built = []

    def _from_config(cls, http_client=None):
        built.append(1)
        return MagicMock(spec=Container)

    monkeypatch.setattr(Container, "from_config", classmethod(_from_config))
    request = MagicMock()
    request.app.state = type("State", (), {})()
    first = get_container(request)
    second = get_container(request)
    assert first is second
    assert len(built) == 1
