"""
寄送通知郵件 (SMTP)

只送純文字內容。MAIL_SUPPRESS_SEND 打開時 (測試或沒設定帳號) 只寫 log
"""
from email.message import EmailMessage
from flask import current_app
import smtplib
import logging

logger = logging.getLogger(__name__)

# ============================================
# 郵件內容
# ============================================

def _welcome(payload):
    return (
        'Welcome to Task Tracker',
        f"Hi {payload.get('name', '')},\n\n"
        f"An account has been created for you.\n"
        f"Email: {payload.get('email')}\n"
        f"Temporary password: {payload.get('tempPassword')}\n\n"
        f"You will be asked to choose a new password when you first sign in."
    )


def _password_reset_otp(payload):
    return (
        'Your password reset code',
        f"Hi {payload.get('name', '')},\n\n"
        f"Your password reset code is {payload.get('otp')}.\n"
        f"It expires in {payload.get('expiresMinutes', 10)} minutes."
    )


def _password_changed(payload):
    return (
        'Your password was changed',
        f"Hi {payload.get('name', '')},\n\n"
        f"The password for your account was changed. "
        f"If this was not you, contact an administrator immediately."
    )


def _task_assigned(payload):
    return (
        f"New task assigned: {payload.get('taskTitle')}",
        f"Hi {payload.get('name', '')},\n\n"
        f"{payload.get('assignedBy')} assigned you the task "
        f"\"{payload.get('taskTitle')}\" ({payload.get('taskNumber')}).\n"
        f"{payload.get('link', '')}"
    )


def _project_assigned(payload):
    return (
        f"You were added to {payload.get('projectTitle')}",
        f"Hi {payload.get('name', '')},\n\n"
        f"{payload.get('assignedBy')} added you to the project "
        f"\"{payload.get('projectTitle')}\" as {payload.get('projectRole')}.\n"
        f"{payload.get('link', '')}"
    )


def _account_status(payload):
    state = 'activated' if payload.get('isActive') else 'deactivated'
    return (
        f"Your account was {state}",
        f"Hi {payload.get('name', '')},\n\nYour account has been {state} by an administrator."
    )


def _task_completed(payload):
    return (
        f"Task completed: {payload.get('taskTitle')}",
        f"Hi {payload.get('name', '')},\n\n"
        f"The task \"{payload.get('taskTitle')}\" ({payload.get('taskNumber')}) "
        f"was marked as done by {payload.get('completedBy')}."
    )


TEMPLATES = {
    'welcome': _welcome,
    'password_reset_otp': _password_reset_otp,
    'password_changed': _password_changed,
    'task_assigned': _task_assigned,
    'project_assigned': _project_assigned,
    'account_status': _account_status,
    'task_completed': _task_completed,
}


def frontend_link(*parts):
    """前端頁面的網址,例如 frontend_link('tasks', 3) -> http://localhost:3000/tasks/3"""
    base = current_app.config.get('FRONTEND_URL', '').rstrip('/')
    return '/'.join([base] + [str(part) for part in parts])


def render(kind, payload):
    """回傳 (subject, body)"""
    builder = TEMPLATES.get(kind)
    if builder is None:
        raise KeyError(f"No mail template for {kind}")
    return builder(payload)

# ============================================
# 寄信
# ============================================

def send_mail(to_addr, subject, body):
    cfg = current_app.config

    if cfg.get('MAIL_SUPPRESS_SEND'):
        logger.info(f"Mail suppressed: '{subject}' to {to_addr}")
        return False

    message = EmailMessage()
    message['Subject'] = subject
    message['From'] = cfg['MAIL_DEFAULT_SENDER']
    message['To'] = to_addr
    message.set_content(body)

    with smtplib.SMTP(host=cfg['MAIL_SERVER'], port=cfg['MAIL_PORT'],
                      timeout=cfg.get('MAIL_TIMEOUT', 15)) as smtp:
        smtp.ehlo()
        if cfg.get('MAIL_USE_TLS'):
            smtp.starttls()
            smtp.ehlo()
        if cfg.get('MAIL_USERNAME') and cfg.get('MAIL_PASSWORD'):
            smtp.login(cfg['MAIL_USERNAME'], cfg['MAIL_PASSWORD'])
        smtp.send_message(message)

    logger.info(f"Mail sent: '{subject}' to {to_addr}")
    return True
