from flask import Blueprint, request, jsonify
from models import db, Notification, utcnow
from auth import caller_required
from schemas import get_pagination, pagination_meta, iso
import repository
import logging

notifications_bp = Blueprint('notifications', __name__)
logger = logging.getLogger(__name__)


def serialize_notification(notification):
    return {
        'id': notification.id,
        'type': notification.type,
        'title': notification.title,
        'message': notification.message,
        'isRead': notification.is_read,
        'readAt': iso(notification.read_at),
        'relatedType': notification.related_type,
        'relatedId': notification.related_id,
        'details': notification.details or {},
        'createdBy': notification.created_by,
        'createdAt': iso(notification.created_at),
    }


def _own_notifications(user_id):
    return Notification.query.filter(
        Notification.user_id == user_id,
        Notification.is_deleted.is_(False)
    )

# ============================================
# 1. 取得使用者的通知
# ============================================

@notifications_bp.route('', methods=['GET'])
@caller_required()
def get_notifications(caller):
    """取得當前使用者的通知 (最新的在前)"""
    page, limit = get_pagination()

    query = _own_notifications(caller.user_id)

    unread_only = request.args.get('unreadOnly', '').lower() in ('1', 'true', 'yes')
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))

    notification_type = request.args.get('type')
    if notification_type:
        query = query.filter(Notification.type == notification_type)

    paginated = query.order_by(Notification.created_at.desc(), Notification.id.desc()).paginate(
        page=page, per_page=limit, error_out=False
    )
    unread_count = _own_notifications(caller.user_id) \
        .filter(Notification.is_read.is_(False)).count()

    return jsonify({
        'notifications': [serialize_notification(n) for n in paginated.items],
        'unreadCount': unread_count,
        'pagination': pagination_meta(paginated, page, limit)
    }), 200

# ============================================
# 2. 標記通知為已讀
# ============================================

@notifications_bp.route('/<int:notification_id>/read', methods=['PATCH'])
@caller_required()
def mark_notification_read(caller, notification_id):
    notification = repository.get_notification(notification_id, caller.user_id)

    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        db.session.commit()

    return jsonify({
        'message': 'Notification marked as read.',
        'notification': serialize_notification(notification)
    }), 200


@notifications_bp.route('/read-all', methods=['PATCH'])
@caller_required()
def mark_all_notifications_read(caller):
    """標記所有通知為已讀"""
    updated = _own_notifications(caller.user_id) \
        .filter(Notification.is_read.is_(False)) \
        .update({'is_read': True, 'read_at': utcnow()}, synchronize_session=False)
    db.session.commit()

    logger.info(f"User {caller.user_id} marked {updated} notifications as read")
    return jsonify({
        'message': 'All notifications marked as read.',
        'updated': updated
    }), 200

# ============================================
# 3. 刪除通知 (軟刪除)
# ============================================

@notifications_bp.route('/<int:notification_id>', methods=['DELETE'])
@caller_required()
def delete_notification(caller, notification_id):
    notification = repository.get_notification(notification_id, caller.user_id)

    notification.is_deleted = True
    notification.deleted_at = utcnow()
    db.session.commit()

    return jsonify({'message': 'Notification deleted.'}), 200
