"""
Script de serveur de développement avec store de contenu en mémoire.

Ce script lance le service avec un store de contenu pré-rempli, sans CMS ni Redis, pour le
développement local et les démonstrations.
"""

import os

# Ensure local-friendly defaults BEFORE importing app/modules
os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("POLL_INTERVAL_MS", "5000")

import uvicorn

from contentsync.app.main import create_app
from contentsync.core.container import Container
from contentsync.domain.events import ContentType
from contentsync.infra.content_source import InMemoryContentSource


def seed(source: InMemoryContentSource) -> None:
    """Quelques articles et études de cas, publiés ou en brouillon."""
    source.upsert(ContentType.ARTICLE, "welcome", title="Welcome")
    source.upsert(ContentType.ARTICLE, "roadmap", title="Roadmap", status="draft")
    source.upsert(ContentType.CASE_STUDY, "acme", title="Acme migration")


def main():
    """
    Point d'entrée principal pour le serveur en mémoire.

    Construit un conteneur autour d'un store pré-rempli puis lance l'application FastAPI.
    """
    source = InMemoryContentSource()
    seed(source)
    app = create_app(Container(source=source))

    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port, reload=False)


if __name__ == "__main__":
    main()
