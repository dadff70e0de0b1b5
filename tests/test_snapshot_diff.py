"""Tests de la comparaison d'instantanés (détection de dérive)."""

from __future__ import annotations

from contentsync.domain.events import ContentAction, ContentType
from contentsync.domain.snapshots import (
    ChangeKind,
    ContentSnapshot,
    DetectedChange,
    SnapshotItem,
    action_for_change,
    detect_changes,
)

T0 = "2024-05-01T10:00:00+00:00"
T1 = "2024-05-01T10:05:00+00:00"


def _snap(*rows: SnapshotItem, content_type: ContentType = ContentType.ARTICLE) -> ContentSnapshot:
    return ContentSnapshot(items={content_type: list(rows)})


def test_status_only_change_is_status_changed() -> None:
    """Brouillon → publié sans modification de date: un seul `status_changed` pour B1."""
    old = _snap(SnapshotItem("B1", T0, "draft"))
    new = _snap(SnapshotItem("B1", T0, "published"))
    result = detect_changes(old, new)
    assert result.has_changes
    assert result.total() == 1
    assert result.changes[ContentType.ARTICLE] == [
        DetectedChange("B1", ChangeKind.STATUS_CHANGED, "published")
    ]


def test_updated_wins_over_status_changed() -> None:
    """Date et statut modifiés: un seul changement, de nature `updated`."""
    old = _snap(SnapshotItem("B1", T0, "published"))
    new = _snap(SnapshotItem("B1", T1, "draft"))
    rows = detect_changes(old, new).changes[ContentType.ARTICLE]
    assert [(c.id, c.kind) for c in rows] == [("B1", ChangeKind.UPDATED)]


def test_created_and_deleted() -> None:
    """Apparitions et disparitions sont classées; les éléments inchangés sont ignorés."""
    old = _snap(SnapshotItem("A", T0, "published"), SnapshotItem("B", T0, "published"))
    new = _snap(SnapshotItem("B", T0, "published"), SnapshotItem("C", T0, "draft"))
    rows = detect_changes(old, new).changes[ContentType.ARTICLE]
    kinds = {c.id: c.kind for c in rows}
    assert kinds == {"C": ChangeKind.CREATED, "A": ChangeKind.DELETED}


def test_identical_snapshots_have_no_changes() -> None:
    """Deux instantanés identiques ne produisent aucun changement."""
    snap = _snap(SnapshotItem("A", T0, "published"))
    result = detect_changes(snap, _snap(SnapshotItem("A", T0, "published")))
    assert not result.has_changes
    assert result.total() == 0
    assert result.to_dict() == {}


def test_types_are_diffed_independently() -> None:
    """Un même identifiant dans deux types n'est pas confondu."""
    old = ContentSnapshot(items={ContentType.ARTICLE: [SnapshotItem("1", T0, "published")]})
    new = ContentSnapshot(items={ContentType.CASE_STUDY: [SnapshotItem("1", T0, "published")]})
    result = detect_changes(old, new)
    assert result.changes[ContentType.ARTICLE][0].kind is ChangeKind.DELETED
    assert result.changes[ContentType.CASE_STUDY][0].kind is ChangeKind.CREATED
    assert result.to_dict() == {
        "article": [{"id": "1", "action": "deleted"}],
        "case-study": [{"id": "1", "action": "created"}],
    }


def test_snapshot_rows_sorted_by_id() -> None:
    """L'instantané est trié par identifiant."""
    snap = _snap(SnapshotItem("b", T0, "draft"), SnapshotItem("a", T0, "draft"))
    assert [r.id for r in snap.items[ContentType.ARTICLE]] == ["a", "b"]
    assert snap.count(ContentType.ARTICLE) == 2
    assert snap.count(ContentType.CASE_STUDY) == 0


def test_action_mapping() -> None:
    """Les changements détectés se traduisent en actions webhook."""
    assert action_for_change(DetectedChange("x", ChangeKind.CREATED)) is ContentAction.CREATE
    assert action_for_change(DetectedChange("x", ChangeKind.UPDATED)) is ContentAction.UPDATE
    assert action_for_change(DetectedChange("x", ChangeKind.DELETED)) is ContentAction.DELETE
    published = DetectedChange("x", ChangeKind.STATUS_CHANGED, "published")
    drafted = DetectedChange("x", ChangeKind.STATUS_CHANGED, "draft")
    assert action_for_change(published) is ContentAction.PUBLISH
    assert action_for_change(drafted) is ContentAction.UNPUBLISH
