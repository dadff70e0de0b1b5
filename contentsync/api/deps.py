"""Dépendances partagées pour les routes de l'API.

Le conteneur est construit par `create_app()` et rangé dans `app.state`; les routes le récupèrent
via ces dépendances plutôt que par un singleton de module.
"""

from fastapi import Request

from contentsync.core.container import Container
from contentsync.services.sync_core import ContentSyncCore


def get_container(request: Request) -> Container:
    """Conteneur de l'application courante."""
    return request.app.state.container


def get_core(request: Request) -> ContentSyncCore:
    """Façade du cœur de synchronisation."""
    return request.app.state.container.core


def get_request_id(request: Request) -> str | None:
    """Identifiant de requête posé par `RequestIDMiddleware`."""
    return getattr(request.state, "request_id", None)
