"""Instantanés de contenu et détection de dérive.

Le détecteur de dérive compare deux générations d'instantanés (précédente, courante) et en déduit
les changements non annoncés par un webhook. La comparaison est une fonction pure, sans E/S.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from contentsync.domain.events import PUBLISHED_STATUS, ContentAction, ContentType


class ChangeKind(str, Enum):
    """Nature d'un changement détecté entre deux instantanés."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    STATUS_CHANGED = "status_changed"


@dataclass(frozen=True)
class SnapshotItem:
    """Ligne d'instantané: identifiant, date de modification et statut."""

    id: str
    last_modified: str
    status: str


@dataclass
class ContentSnapshot:
    """Instantané du store faisant autorité, trié par identifiant pour chaque type."""

    items: dict[ContentType, list[SnapshotItem]] = field(default_factory=dict)
    taken_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        """Garantit l'ordre par identifiant."""
        self.items = {ct: sorted(rows, key=lambda r: r.id) for ct, rows in self.items.items()}

    def count(self, content_type: ContentType) -> int:
        """Nombre d'éléments pour un type."""
        return len(self.items.get(content_type, []))


@dataclass(frozen=True)
class DetectedChange:
    """Changement détecté pour un élément."""

    id: str
    kind: ChangeKind
    new_status: str | None = None


@dataclass
class ChangeDetectionResult:
    """Résultat dérivé d'une comparaison; jamais persisté."""

    changes: dict[ContentType, list[DetectedChange]] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        """Indique si au moins un changement a été détecté."""
        return any(self.changes.values())

    def total(self) -> int:
        """Nombre total de changements, tous types confondus."""
        return sum(len(v) for v in self.changes.values())

    def to_dict(self) -> dict[str, list[dict[str, str]]]:
        """Représentation sérialisable (journaux, route /poller)."""
        return {
            ct.value: [{"id": c.id, "action": c.kind.value} for c in rows]
            for ct, rows in self.changes.items()
        }


def _diff_rows(old: list[SnapshotItem], new: list[SnapshotItem]) -> list[DetectedChange]:
    old_by_id = {r.id: r for r in old}
    new_by_id = {r.id: r for r in new}
    out: list[DetectedChange] = []
    for item_id, row in new_by_id.items():
        if item_id not in old_by_id:
            out.append(DetectedChange(item_id, ChangeKind.CREATED, row.status))
    for item_id, row in new_by_id.items():
        prev = old_by_id.get(item_id)
        if prev is None:
            continue
        # updated l'emporte sur status_changed quand les deux diffèrent
        if prev.last_modified != row.last_modified:
            out.append(DetectedChange(item_id, ChangeKind.UPDATED, row.status))
        elif prev.status != row.status:
            out.append(DetectedChange(item_id, ChangeKind.STATUS_CHANGED, row.status))
    for item_id in old_by_id:
        if item_id not in new_by_id:
            out.append(DetectedChange(item_id, ChangeKind.DELETED))
    return out


def detect_changes(old: ContentSnapshot, new: ContentSnapshot) -> ChangeDetectionResult:
    """Compare deux instantanés et classe chaque différence par type de contenu."""
    result = ChangeDetectionResult()
    for content_type in {*old.items.keys(), *new.items.keys()}:
        rows = _diff_rows(old.items.get(content_type, []), new.items.get(content_type, []))
        if rows:
            result.changes[content_type] = rows
    return result


def action_for_change(change: DetectedChange) -> ContentAction:
    """Traduit un changement détecté en action webhook.

    Un changement de statut est distingué selon le nouveau statut: `publish` si l'élément devient
    publié, `unpublish` sinon.
    """
    if change.kind is ChangeKind.CREATED:
        return ContentAction.CREATE
    if change.kind is ChangeKind.UPDATED:
        return ContentAction.UPDATE
    if change.kind is ChangeKind.DELETED:
        return ContentAction.DELETE
    if change.new_status == PUBLISHED_STATUS:
        return ContentAction.PUBLISH
    return ContentAction.UNPUBLISH
