"""Définition et chargement des paramètres de configuration applicative.

Objectif du module
------------------
- Centraliser les paramètres (env/.env) via Pydantic Settings
- Résoudre le fichier `.env` à utiliser selon la stratégie: ENV_FILE > .env.{APP_ENV} > .env
- Exposer une vue `SyncOptions` consommée par les composants de synchronisation
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import AnyHttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_POLL_INTERVAL_MS = 1000

# Détermination du fichier .env à utiliser avec priorité:
# 1) ENV_FILE (chemin explicite)
# 2) .env.{APP_ENV} si présent
# 3) .env (défaut)
_cwd = Path.cwd()
_env_file_from_env = os.getenv("ENV_FILE")
if _env_file_from_env:
    _ENV_FILE_PATH = _env_file_from_env
else:
    _app_env = os.getenv("APP_ENV", "dev")
    _candidate_specific = _cwd / f".env.{_app_env}"
    _candidate_default = _cwd / ".env"
    if _candidate_specific.exists():
        _ENV_FILE_PATH = _candidate_specific
    else:
        _ENV_FILE_PATH = _candidate_default


class Settings(BaseSettings):
    """Modèle de configuration chargé depuis l'environnement et .env."""

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE_PATH,
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
    )
    APP_NAME: str = "content-sync"
    APP_ENV: str = "dev"
    APP_DEBUG: bool = True
    APP_HOST: str = "0.0.0.0"
    APP_PORT: int = 8000

    REDIS_URL: str | None = None
    # Store de contenu faisant autorité (lecture admin + publique)
    CONTENT_API_URL: AnyHttpUrl | None = None
    CONTENT_API_TOKEN: str | None = None
    CONTENT_API_TIMEOUT_S: float = 5.0
    CONTENT_TYPES: list[str] = ["article", "case-study"]

    # Webhooks
    WEBHOOK_SECRET: str = "dev-webhook-secret-change-me"
    WEBHOOK_REQUIRE_SIGNATURE: bool = False
    WEBHOOK_MAX_PAYLOAD_BYTES: int = 1024 * 1024
    WEBHOOK_FRESHNESS_WINDOW_MS: int = 300_000
    MAX_RETRIES: int = 3
    RETRY_BASE_DELAY_MS: int = 100
    RETRY_MAX_DELAY_MS: int = 5000
    RETRY_BACKOFF_MULTIPLIER: float = 2.0

    # Détection de dérive (polling)
    POLL_ENABLED: bool = True
    POLL_INTERVAL_MS: int = 2000
    POLL_FAILURE_THRESHOLD: int = 3
    POLL_COOLDOWN_MS: int = 30_000

    # Monitoring & alertes
    MONITOR_INTERVAL_MS: int = 30_000
    RECORDER_MAX_ENTRIES: int = 1000
    ALERT_WEBHOOK_FAILURE_PCT: float = 10.0
    ALERT_CACHE_HIT_RATE_FLOOR_PCT: float = 80.0
    ALERT_ERROR_RATE_CEILING_PCT: float = 5.0
    ALERT_RESPONSE_TIME_CEILING_MS: float = 2000.0
    ALERT_SECURITY_EVENTS_CEILING: int = 10
    ALERT_SECURITY_WINDOW_S: int = 3600

    # Broadcast inter-processus
    BROADCAST_CHANNEL: str = "content-sync-updates"

    @field_validator("POLL_INTERVAL_MS")
    @classmethod
    def _clamp_poll_interval(cls, v: int) -> int:
        return max(MIN_POLL_INTERVAL_MS, int(v))


@dataclass
class AlertThresholds:
    """Seuils d'alerte évalués par le Monitor."""

    webhook_failure_pct: float = 10.0
    cache_hit_rate_floor_pct: float = 80.0
    error_rate_ceiling_pct: float = 5.0
    response_time_ceiling_ms: float = 2000.0
    security_events_ceiling: int = 10
    security_window_s: int = 3600


@dataclass
class SyncOptions:
    """Options reconnues par le cœur de synchronisation (valeurs par défaut documentées)."""

    poll_interval_ms: int = 2000
    poll_failure_threshold: int = 3
    poll_cooldown_ms: int = 30_000
    max_retries: int = 3
    retry_base_delay_ms: int = 100
    retry_max_delay_ms: int = 5000
    retry_backoff_multiplier: float = 2.0
    webhook_freshness_window_ms: int = 300_000
    monitor_interval_ms: int = 30_000
    alert_thresholds: AlertThresholds = field(default_factory=AlertThresholds)

    def __post_init__(self) -> None:
        """Applique le plancher de fréquence de polling."""
        self.poll_interval_ms = max(MIN_POLL_INTERVAL_MS, int(self.poll_interval_ms))

    @classmethod
    def from_settings(cls, settings: Settings) -> SyncOptions:
        """Construit les options à partir des paramètres applicatifs."""
        return cls(
            poll_interval_ms=settings.POLL_INTERVAL_MS,
            poll_failure_threshold=settings.POLL_FAILURE_THRESHOLD,
            poll_cooldown_ms=settings.POLL_COOLDOWN_MS,
            max_retries=settings.MAX_RETRIES,
            retry_base_delay_ms=settings.RETRY_BASE_DELAY_MS,
            retry_max_delay_ms=settings.RETRY_MAX_DELAY_MS,
            retry_backoff_multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
            webhook_freshness_window_ms=settings.WEBHOOK_FRESHNESS_WINDOW_MS,
            monitor_interval_ms=settings.MONITOR_INTERVAL_MS,
            alert_thresholds=AlertThresholds(
                webhook_failure_pct=settings.ALERT_WEBHOOK_FAILURE_PCT,
                cache_hit_rate_floor_pct=settings.ALERT_CACHE_HIT_RATE_FLOOR_PCT,
                error_rate_ceiling_pct=settings.ALERT_ERROR_RATE_CEILING_PCT,
                response_time_ceiling_ms=settings.ALERT_RESPONSE_TIME_CEILING_MS,
                security_events_ceiling=settings.ALERT_SECURITY_EVENTS_CEILING,
                security_window_s=settings.ALERT_SECURITY_WINDOW_S,
            ),
        )


def get_settings() -> Settings:
    """Construit et retourne la configuration de l'application."""
    return Settings()
