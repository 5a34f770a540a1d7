"""
Registre central des routers (API v1, health).
- API v1: checkout, upsell, vault, orders, sessions, webhooks
- Health: health_router
"""
from fastapi import FastAPI
from funnel.checkout import views as checkout_views
from funnel.upsell import views as upsell_views
from funnel.vault import views as vault_views
from funnel.orders import views as orders_views
from funnel.sessions import views as sessions_views
from funnel.webhooks import views as webhooks_views
from funnel.health.router import router as health_router

def register_routers(app: FastAPI) -> None:
    """
    Agrège tous les routers de l'application.
    - L'ordre n'a pas d'impact sauf conflits de chemins (évités par préfixes).
    """
    # API v1
    app.include_router(checkout_views.router)
    app.include_router(upsell_views.router)
    app.include_router(vault_views.router)
    app.include_router(orders_views.router)
    app.include_router(sessions_views.router)
    app.include_router(webhooks_views.router)
    # Health & monitoring
    app.include_router(health_router)
