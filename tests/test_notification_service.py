"""
Tests for NotificationService.

Covers: per-recipient fan-out, broadcast rows, read tracking and the
best-effort contract of notify_timeline_changed.
"""

from planner.models.notification import Notification
from planner.services.notification import NotificationService


def test_one_row_per_recipient(pm, consultant):
    created = NotificationService.broadcast(
        title="Hello", recipient_ids={pm.id, consultant.id, None},
    )
    assert sorted(n.recipient_id for n in created) == sorted([pm.id, consultant.id])


def test_no_recipients_creates_broadcast(pm):
    created = NotificationService.broadcast(title="Maintenance tonight")
    assert len(created) == 1
    assert created[0].recipient_id is None

    items, total = NotificationService.list_for_recipient(pm.id)
    assert total == 1
    assert items[0].title == "Maintenance tonight"


def test_unread_count_and_mark_read(pm, consultant):
    NotificationService.broadcast(title="A", recipient_ids=[pm.id])
    NotificationService.broadcast(title="B", recipient_ids=[pm.id])
    assert NotificationService.unread_count(pm.id) == 2

    first = Notification.query.filter_by(recipient_id=pm.id).first()
    assert NotificationService.mark_read(first.id, consultant.id) is None
    assert NotificationService.mark_read(first.id, pm.id).is_read is True
    assert NotificationService.unread_count(pm.id) == 1

    items, total = NotificationService.list_for_recipient(pm.id, unread_only=True)
    assert total == 1


def test_timeline_notification_failure_is_swallowed(pm, monkeypatch, caplog):
    def _boom(**kwargs):
        raise RuntimeError("notification store down")

    monkeypatch.setattr(NotificationService, "broadcast", staticmethod(_boom))
    result = NotificationService.notify_timeline_changed(
        event="phase_allocation.approved",
        title="Allocation approved",
        entity_type="phase_allocation",
        entity_id=1,
        recipient_ids={pm.id},
    )
    assert result == []
    assert any("notification" in r.getMessage().lower() for r in caplog.records)
