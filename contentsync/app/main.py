"""
Application principale FastAPI.

Ce module assemble tous les composants de l'application: middlewares,
routes, métriques et cycle de vie du cœur de synchronisation de contenu.

Responsabilités du module:
- Initialiser le logging structuré
- Construire le conteneur (ou utiliser celui fourni) et le ranger dans `app.state`
- Démarrer puis arrêter le cœur via le lifespan de l'application
- Ajouter les middlewares (request id, métriques, timing) et les handlers d'erreurs
- Monter les routers (santé, webhooks, polling, monitoring, contenu, métriques)
"""

from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from contentsync.api.errors import install_error_handlers
from contentsync.api.routes_content import router as content_router
from contentsync.api.routes_health import router as health_router
from contentsync.api.routes_monitoring import router as monitoring_router
from contentsync.api.routes_poller import router as poller_router
from contentsync.api.routes_webhooks import router as webhooks_router
from contentsync.app.metrics import PrometheusMiddleware, metrics_router
from contentsync.core.container import Container
from contentsync.core.logging import setup_logging
from contentsync.middlewares.request_id import RequestIDMiddleware
from contentsync.middlewares.timing import TimingMiddleware

log = structlog.get_logger(__name__)


def create_app(container: Container | None = None) -> FastAPI:
    """
    Construit et retourne l'application FastAPI prête à l'usage.

    Étapes:
    - Configure le logging structuré (structlog), JSON hors développement
    - Construit le conteneur à partir des paramètres si aucun n'est fourni
    - Ajoute les middlewares utiles au debug/traçabilité
    - Publie les routes de santé, webhooks, polling, monitoring et contenu
    """
    container = container or Container()
    settings = container.settings
    setup_logging(json_logs=settings.APP_ENV not in ("dev", "test"))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await container.core.start()
        log.info("app_started", env=settings.APP_ENV, storage=container.storage_backend)
        try:
            yield
        finally:
            await container.aclose()
            log.info("app_stopped")

    app = FastAPI(title=settings.APP_NAME, debug=settings.APP_DEBUG, lifespan=lifespan)
    app.state.container = container
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(TimingMiddleware)
    install_error_handlers(app)
    app.include_router(health_router)
    app.include_router(webhooks_router)
    app.include_router(poller_router)
    app.include_router(monitoring_router)
    app.include_router(content_router)
    app.include_router(metrics_router)
    return app


app = create_app()
