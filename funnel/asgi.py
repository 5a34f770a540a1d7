"""
ASGI entrypoint: expose `app` for process managers / deployments.

- En production, un process manager (ex: gunicorn/uvicorn-workers) importe `funnel.asgi:app`.
- Toute la configuration de FastAPI (routes, middlewares, lifespan) est centralisée
  dans funnel.app, ce fichier ne fait qu'exposer l'instance `app`.
"""

from funnel.app import app

if __name__ == "__main__":
    # Exécution directe utile en développement local (uvicorn standalone).
    import os
    import uvicorn
    uvicorn.run(
        "funnel.asgi:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True,
    )
