from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from funnel.container import Container, get_container
from funnel.infra.supabase_client import health_supabase_info
from funnel.utils.rate_limit import rate_limit_health_info

router = APIRouter(prefix="/health", tags=["Health"])

@router.get("")
def health_root():
    return {"ok": True}

@router.get("/gateway")
def health_gateway(container: Container = Depends(get_container)):
    info = container.gateway.health_info()
    return JSONResponse(info, status_code=200 if info["configured"] else 503)

@router.get("/store")
def health_store(request: Request, container: Container = Depends(get_container)):
    return {
        "sessions": container.store.stats(),
        "orders": {"backend": container.orders.backend_name},
        "supabase": health_supabase_info() if container.orders.backend_name == "supabase" else None,
        "events": container.bus.health_info(),
        "rateLimit": rate_limit_health_info(request),
    }
