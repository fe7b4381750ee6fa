"""
交易完成後的副作用 (站內通知 + email)

service 只回傳 Effect 清單;blueprint commit 成功後才呼叫 dispatch_effects。
任何一個 effect 失敗都只記 log,不影響其他 effect,也不影響原本的回應。
"""
import logging

from models import db, Notification, User
from errors import DependencyError
import mailer

logger = logging.getLogger(__name__)

# 不寫站內通知的類型 (只寄信)
MAIL_ONLY_KINDS = frozenset({'welcome', 'password_reset_otp', 'password_changed'})

# 帶有敏感資料的欄位不能存進通知
SENSITIVE_KEYS = frozenset({'otp', 'tempPassword'})


class Effect:
    __slots__ = ('kind', 'recipient_id', 'payload')

    def __init__(self, kind, recipient_id, payload=None):
        self.kind = kind
        self.recipient_id = recipient_id
        self.payload = payload or {}

    def __repr__(self):
        return f"<Effect {self.kind} -> {self.recipient_id}>"

    def __eq__(self, other):
        return (
            isinstance(other, Effect)
            and self.kind == other.kind
            and self.recipient_id == other.recipient_id
            and self.payload == other.payload
        )


# ============================================
# 站內通知內容
# ============================================

def _notification_fields(effect):
    payload = effect.payload
    if effect.kind == 'task_assigned':
        return {
            'title': 'New task assigned',
            'message': f"{payload.get('assignedBy')} assigned you \"{payload.get('taskTitle')}\".",
            'related_type': 'task',
            'related_id': payload.get('taskId'),
        }
    if effect.kind == 'task_completed':
        return {
            'title': 'Task completed',
            'message': f"\"{payload.get('taskTitle')}\" was marked as done.",
            'related_type': 'task',
            'related_id': payload.get('taskId'),
        }
    if effect.kind == 'project_assigned':
        return {
            'title': 'Added to project',
            'message': f"You were added to \"{payload.get('projectTitle')}\" as {payload.get('projectRole')}.",
            'related_type': 'project',
            'related_id': payload.get('projectId'),
        }
    if effect.kind == 'account_status':
        state = 'activated' if payload.get('isActive') else 'deactivated'
        return {
            'title': 'Account status changed',
            'message': f"Your account was {state}.",
            'related_type': 'user',
            'related_id': effect.recipient_id,
        }
    return None


def _deliver(effect):
    recipient = db.session.get(User, effect.recipient_id)
    if recipient is None:
        raise DependencyError(f"Recipient {effect.recipient_id} not found")

    if effect.kind not in MAIL_ONLY_KINDS:
        fields = _notification_fields(effect)
        if fields:
            notification = Notification(
                user_id=recipient.id,
                type=effect.kind,
                created_by=effect.payload.get('actorId'),
                details={k: v for k, v in effect.payload.items() if k not in SENSITIVE_KEYS},
                **fields
            )
            db.session.add(notification)
            db.session.commit()

    payload = dict(effect.payload)
    payload.setdefault('name', recipient.fname)
    subject, body = mailer.render(effect.kind, payload)
    try:
        mailer.send_mail(recipient.email, subject, body)
    except Exception as e:
        raise DependencyError(f"Mail delivery failed: {str(e)}") from e


def dispatch_effects(effects):
    """
    逐一送出 effects

    Returns:
        int: 成功送出的數量
    """
    delivered = 0
    for effect in effects or []:
        try:
            _deliver(effect)
            delivered += 1
        except Exception as e:
            db.session.rollback()
            logger.error(f"Failed to dispatch {effect.kind} to user {effect.recipient_id}: {str(e)}", exc_info=True)
    return delivered
