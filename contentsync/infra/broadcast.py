"""Bus de diffusion des mises à jour de contenu.

Le bus notifie de manière synchrone les abonnés locaux puis, si un transport est configuré,
relaie l'évènement aux autres processus (canal en mémoire nommé ou Redis pub/sub). Les messages
reçus d'un transport sont redistribués aux abonnés locaux sans être ré-émis.

Aucune persistance ni rejeu: un abonné absent au moment de la diffusion ne reçoit rien.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog

from contentsync.app.metrics import BROADCAST_DELIVERIES, BROADCAST_LISTENER_ERRORS
from contentsync.domain.events import ContentAction, ContentType, parse_timestamp

log = structlog.get_logger(__name__)


class UpdateType(str, Enum):
    """Nature de la mise à jour diffusée."""

    CREATED = "content-created"
    UPDATED = "content-updated"
    DELETED = "content-deleted"

    @classmethod
    def for_action(cls, action: ContentAction | None) -> UpdateType:
        """create → created, delete → deleted, toute autre action → updated."""
        if action is ContentAction.CREATE:
            return cls.CREATED
        if action is ContentAction.DELETE:
            return cls.DELETED
        return cls.UPDATED


@dataclass(frozen=True)
class UpdateEvent:
    """Message diffusé après chaque invalidation."""

    type: UpdateType
    content_type: ContentType
    content_id: str | None
    action: ContentAction | None
    keys: tuple[str, ...] = ()
    strength: str = "standard"
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    origin: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Représentation JSON (clés camelCase)."""
        return {
            "type": self.type.value,
            "contentType": self.content_type.value,
            "contentId": self.content_id,
            "action": self.action.value if self.action else None,
            "keys": list(self.keys),
            "strength": self.strength,
            "timestamp": self.timestamp.isoformat(),
            "origin": self.origin,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> UpdateEvent:
        """Reconstruit un évènement reçu d'un transport.

        Raises:
            ValueError/KeyError: message mal formé.
        """
        action = payload.get("action")
        return cls(
            type=UpdateType(payload["type"]),
            content_type=ContentType(payload["contentType"]),
            content_id=payload.get("contentId"),
            action=ContentAction(action) if action else None,
            keys=tuple(payload.get("keys") or ()),
            strength=str(payload.get("strength") or "standard"),
            timestamp=parse_timestamp(payload["timestamp"]),
            origin=payload.get("origin"),
        )


Listener = Callable[[UpdateEvent], Any]
RemoteCallback = Callable[[dict[str, Any]], None]


class Transport(ABC):
    """Transport inter-processus optionnel du bus."""

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> None:
        """Émet un message vers les autres participants."""

    @abstractmethod
    async def listen(self, callback: RemoteCallback) -> None:
        """Commence à livrer les messages reçus à `callback`."""

    @abstractmethod
    async def close(self) -> None:
        """Arrête la réception et libère les ressources."""


class LocalChannelHub:
    """Canal nommé partagé en mémoire entre plusieurs transports (plusieurs bus, un processus)."""

    def __init__(self, name: str = "content-sync") -> None:
        """Initialise un canal vide."""
        self.name = name
        self._members: list[LocalChannelTransport] = []

    def join(self, member: LocalChannelTransport) -> None:
        """Ajoute un participant."""
        if member not in self._members:
            self._members.append(member)

    def leave(self, member: LocalChannelTransport) -> None:
        """Retire un participant."""
        with contextlib.suppress(ValueError):
            self._members.remove(member)

    def deliver(self, sender: LocalChannelTransport, message: dict[str, Any]) -> int:
        """Livre une copie du message à tous les autres participants."""
        raw = json.dumps(message, default=str)
        delivered = 0
        for member in list(self._members):
            if member is sender:
                continue
            member.receive(json.loads(raw))
            delivered += 1
        return delivered


class LocalChannelTransport(Transport):
    """Transport en mémoire rattaché à un `LocalChannelHub`."""

    def __init__(self, hub: LocalChannelHub) -> None:
        """Rattache le transport au canal (la réception démarre avec `listen`)."""
        self.hub = hub
        self._callback: RemoteCallback | None = None

    async def send(self, message: dict[str, Any]) -> None:
        """Diffuse sur le canal."""
        self.hub.deliver(self, message)

    async def listen(self, callback: RemoteCallback) -> None:
        """Rejoint le canal."""
        self._callback = callback
        self.hub.join(self)

    def receive(self, message: dict[str, Any]) -> None:
        """Point d'entrée appelé par le canal."""
        if self._callback is not None:
            self._callback(message)

    async def close(self) -> None:
        """Quitte le canal."""
        self.hub.leave(self)
        self._callback = None


class RedisTransport(Transport):
    """Transport Redis pub/sub (`redis.asyncio`)."""

    def __init__(self, client: Any, channel: str = "content-sync:updates") -> None:
        """Initialise le transport sur un client `redis.asyncio.Redis`."""
        self.client = client
        self.channel = channel
        self._pubsub: Any = None
        self._task: asyncio.Task | None = None

    async def send(self, message: dict[str, Any]) -> None:
        """Publie le message JSON sur le canal."""
        await self.client.publish(self.channel, json.dumps(message, default=str))

    async def listen(self, callback: RemoteCallback) -> None:
        """S'abonne au canal et lance la tâche de réception."""
        self._pubsub = self.client.pubsub()
        await self._pubsub.subscribe(self.channel)
        self._task = asyncio.create_task(self._listen(callback))

    async def _listen(self, callback: RemoteCallback) -> None:
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            data = message.get("data")
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            try:
                callback(json.loads(data))
            except Exception:
                log.exception("broadcast_remote_message_error", channel=self.channel)

    async def close(self) -> None:
        """Annule la réception et se désabonne."""
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
            self._pubsub = None


class BroadcastBus:
    """Diffusion locale synchrone + relais ordonné vers un transport optionnel."""

    def __init__(self, transport: Transport | None = None, origin: str | None = None) -> None:
        """Initialise le bus; `origin` identifie ce processus dans les messages relayés."""
        self.transport = transport
        self.origin = origin or uuid.uuid4().hex[:12]
        self._listeners: list[Listener] = []
        self._queue: asyncio.Queue[UpdateEvent] | None = None
        self._consumer: asyncio.Task | None = None
        self._started = False

    @property
    def listener_count(self) -> int:
        """Nombre d'abonnés locaux."""
        return len(self._listeners)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Abonne un listener; retourne la fonction de désabonnement (idempotente)."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _unsubscribe

    def _fan_out(self, event: UpdateEvent, direction: str) -> int:
        delivered = 0
        for listener in list(self._listeners):
            try:
                listener(event)
                delivered += 1
            except Exception:
                BROADCAST_LISTENER_ERRORS.inc()
                log.exception(
                    "broadcast_listener_error",
                    content_type=event.content_type.value,
                    content_id=event.content_id,
                )
        BROADCAST_DELIVERIES.labels(direction=direction, result="delivered").inc()
        return delivered

    def publish(self, event: UpdateEvent) -> int:
        """Notifie les abonnés locaux puis met l'évènement en file pour le transport.

        Returns:
            int: nombre de listeners locaux notifiés sans erreur.
        """
        if event.origin is None:
            event = replace(event, origin=self.origin)
        delivered = self._fan_out(event, "local")
        if self.transport is not None:
            self._enqueue(event)
        return delivered

    def _enqueue(self, event: UpdateEvent) -> None:
        if self._queue is None:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                log.warning("broadcast_relay_skipped", reason="no running event loop")
                return
            self._start_consumer()
        self._queue.put_nowait(event)  # type: ignore[union-attr]

    def _start_consumer(self) -> None:
        self._queue = asyncio.Queue()
        self._consumer = asyncio.create_task(self._consume(self._queue))

    async def _consume(self, queue: asyncio.Queue[UpdateEvent]) -> None:
        while True:
            event = await queue.get()
            try:
                await self.transport.send(event.to_dict())  # type: ignore[union-attr]
                BROADCAST_DELIVERIES.labels(direction="outbound", result="sent").inc()
            except Exception:
                BROADCAST_DELIVERIES.labels(direction="outbound", result="failed").inc()
                log.exception("broadcast_send_failed", content_type=event.content_type.value)
            finally:
                queue.task_done()

    def _on_remote(self, message: dict[str, Any]) -> None:
        if message.get("origin") == self.origin:
            return
        try:
            event = UpdateEvent.from_dict(message)
        except (KeyError, TypeError, ValueError):
            BROADCAST_DELIVERIES.labels(direction="inbound", result="malformed").inc()
            log.warning("broadcast_message_malformed", message=message)
            return
        self._fan_out(event, "inbound")

    def is_local(self, event: UpdateEvent) -> bool:
        """Indique si l'évènement a été émis par ce bus."""
        return event.origin == self.origin

    async def start(self) -> None:
        """Démarre la réception et le relais vers le transport."""
        if self._started or self.transport is None:
            return
        self._started = True
        await self.transport.listen(self._on_remote)
        if self._queue is None:
            self._start_consumer()

    async def flush(self) -> None:
        """Attend que tous les évènements en file aient été relayés."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self) -> None:
        """Vide la file, arrête le relais et ferme le transport."""
        if self._queue is not None:
            await self.flush()
        if self._consumer is not None:
            self._consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer
        self._consumer = None
        self._queue = None
        if self.transport is not None and self._started:
            await self.transport.close()
        self._started = False
