"""
Notification Blueprint.

Routes:
  GET    /notifications                 – caller's notifications (?unread_only=true)
  GET    /notifications/unread-count    – unread badge count
  POST   /notifications/<nid>/read      – mark one as read
"""

from flask import Blueprint, jsonify, request

from planner.blueprints import current_actor
from planner.core.exceptions import NotFoundError
from planner.services.notification import NotificationService
from planner.utils.errors import register_error_handlers

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1/notifications")
register_error_handlers(notification_bp)


@notification_bp.route("", methods=["GET"])
def list_notifications():
    actor = current_actor()
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = max(request.args.get("offset", 0, type=int), 0)
    items, total = NotificationService.list_for_recipient(
        actor.user_id, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@notification_bp.route("/unread-count", methods=["GET"])
def unread_count():
    return jsonify({"unread_count": NotificationService.unread_count(current_actor().user_id)})


@notification_bp.route("/<int:nid>/read", methods=["POST"])
def mark_read(nid):
    actor = current_actor()
    notif = NotificationService.mark_read(nid, actor.user_id)
    if notif is None:
        raise NotFoundError("Notification", nid)
    return jsonify(notif.to_dict())
