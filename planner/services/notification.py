"""
Consultant Allocation Planner
Notification Service.

Creates and queries in-app notifications. Lifecycle services call
``notify_timeline_changed`` after their transaction has committed; delivery is
best-effort and a failure here never undoes the transition that triggered it.
"""

import logging

from planner.models import db
from planner.models.notification import Notification

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def broadcast(*, title, message="", category="system", severity="info",
                  project_id=None, entity_type="", entity_id=None,
                  recipient_ids=None):
        """
        Send a notification to each recipient (one broadcast row if none given).

        Returns:
            List of created Notification instances (committed).
        """
        targets = sorted({r for r in (recipient_ids or []) if r is not None}) or [None]
        notifications = []
        for recipient_id in targets:
            notif = Notification(
                recipient_id=recipient_id,
                project_id=project_id,
                title=title,
                message=message,
                category=category,
                severity=severity,
                entity_type=entity_type,
                entity_id=entity_id,
            )
            db.session.add(notif)
            notifications.append(notif)
        db.session.commit()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient_id, unread_only=False, limit=50, offset=0):
        """Notifications addressed to the user or broadcast, newest first."""
        q = Notification.query.filter(
            (Notification.recipient_id == recipient_id) | (Notification.recipient_id.is_(None))
        )
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(recipient_id):
        return Notification.query.filter(
            (Notification.recipient_id == recipient_id) | (Notification.recipient_id.is_(None))
        ).filter_by(is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, recipient_id):
        """Mark a single notification as read. Returns None if not visible to the recipient."""
        notif = db.session.get(Notification, notification_id)
        if notif is None or notif.recipient_id not in (recipient_id, None):
            return None
        notif.mark_read()
        db.session.commit()
        return notif

    # ── Timeline integration ──────────────────────────────────────────────

    @staticmethod
    def notify_timeline_changed(*, event, title, message="", entity_type="", entity_id=None,
                                project_id=None, recipient_ids=None, severity="info"):
        """
        Signal that timeline data changed after a committed transition.

        Never raises: a failed write is rolled back and logged.
        """
        logger.info(
            "Timeline changed",
            extra={
                "event": event,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "project_id": project_id,
            },
        )
        try:
            return NotificationService.broadcast(
                title=title,
                message=message,
                category="timeline",
                severity=severity,
                project_id=project_id,
                entity_type=entity_type,
                entity_id=entity_id,
                recipient_ids=recipient_ids,
            )
        except Exception:
            db.session.rollback()
            logger.warning("Timeline notification failed, transition unaffected", exc_info=True)
            return []
