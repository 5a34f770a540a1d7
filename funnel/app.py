# module funnel.app
from fastapi import FastAPI

from funnel.app_setup.middlewares import register_security_middleware, register_no_cache_middleware, register_basic_middlewares, register_force_https_middleware
from funnel.app_setup.exception_handlers import register_exception_handlers
from funnel.app_setup.routers import register_routers
from funnel.app_setup.lifespan import lifespan as app_lifespan

def create_app() -> FastAPI:
    """
    Crée et configure l'instance FastAPI du funnel de paiement.
    Étapes et ordre (important pour la sécurité et le comportement):
      1) register_basic_middlewares: CORS, TrustedHost.
      2) register_security_middleware: en-têtes de sécurité.
      3) register_no_cache_middleware: aucune mise en cache des réponses de paiement/statut.
      4) register_exception_handlers: FunnelError -> JSON taxonomie, HTTPException -> JSON.
      5) register_routers: checkout, upsell, vault, orders, sessions, webhooks, health.
      6) register_force_https_middleware: ajouté en dernier pour s'exécuter en premier (redirection HTTPS).
    Retourne:
      - FastAPI: l'application prête à être servie (ASGI).
    """
    app = FastAPI(title="Funnel Payments API", lifespan=app_lifespan)
    register_basic_middlewares(app)
    register_security_middleware(app)
    register_no_cache_middleware(app)
    register_exception_handlers(app)
    register_routers(app)
    # Ajouter le middleware HTTPS en dernier pour qu'il s'exécute en premier
    register_force_https_middleware(app)
    return app

# App globale
app = create_app()
