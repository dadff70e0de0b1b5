"""Configuration de test pour pytest avec gestion des chemins.

Ce module configure pytest pour résoudre les imports `contentsync` en ajoutant la racine du projet
au sys.path, et fournit les composants du cœur câblés sur un store de contenu en mémoire.
"""

import os
import sys

import pytest

# Ensure project root is on sys.path so that
# imports like `from contentsync...` resolve.
CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from contentsync.core.settings import Settings, SyncOptions  # noqa: E402
from contentsync.infra.broadcast import BroadcastBus  # noqa: E402
from contentsync.infra.content_source import InMemoryContentSource  # noqa: E402
from contentsync.infra.monitoring.recorder import OperationRecorder  # noqa: E402
from contentsync.services.invalidation import InvalidationEngine  # noqa: E402
from contentsync.services.webhook_processor import WebhookProcessor  # noqa: E402
from tests.fakes import TEST_SECRET  # noqa: E402


@pytest.fixture
def recorder() -> OperationRecorder:
    """Journal des opérations vide."""
    return OperationRecorder(max_entries=500)


@pytest.fixture
def source() -> InMemoryContentSource:
    """Store de contenu en mémoire, vide."""
    return InMemoryContentSource()


@pytest.fixture
def bus() -> BroadcastBus:
    """Bus de diffusion sans transport."""
    return BroadcastBus()


@pytest.fixture
def engine(source, bus, recorder) -> InvalidationEngine:
    """Moteur d'invalidation câblé sur le store en mémoire."""
    return InvalidationEngine(source, bus, recorder)


@pytest.fixture
def fast_options() -> SyncOptions:
    """Options avec des délais de rejeu de l'ordre de la milliseconde."""
    return SyncOptions(
        max_retries=3,
        retry_base_delay_ms=1,
        retry_max_delay_ms=5,
        retry_backoff_multiplier=2.0,
    )


@pytest.fixture
def processor(engine, recorder, fast_options, source) -> WebhookProcessor:
    """Processeur de webhooks signé par `TEST_SECRET`."""
    return WebhookProcessor(
        engine, recorder, options=fast_options, secret=TEST_SECRET, source=source
    )


@pytest.fixture
def test_settings() -> Settings:
    """Paramètres de test: pas de Redis, pas de CMS HTTP, polling désactivé."""
    return Settings(
        APP_ENV="test",
        REDIS_URL=None,
        CONTENT_API_URL=None,
        WEBHOOK_SECRET=TEST_SECRET,
        POLL_ENABLED=False,
        RETRY_BASE_DELAY_MS=1,
        RETRY_MAX_DELAY_MS=5,
    )


@pytest.fixture
def container(test_settings, source):
    """Conteneur de test autour du store en mémoire."""
    from contentsync.core.container import Container

    return Container(settings=test_settings, source=source)


@pytest.fixture
def client(container):
    """Client HTTP sur une application dont le cycle de vie est actif."""
    from fastapi.testclient import TestClient

    from contentsync.app.main import create_app

    with TestClient(create_app(container)) as c:
        yield c
