"""
帳號相關流程:登入、暫時密碼、OTP 重設密碼、管理員的使用者管理
"""
from datetime import timedelta
from flask import current_app
import secrets
import string
import re
import logging

from models import db, User, OtpRequest, OtpPurpose, GlobalRole, utcnow
from errors import ValidationError, AuthenticationError, AuthorizationError, NotFoundError, StateError
from effects import Effect
import access
import repository

logger = logging.getLogger(__name__)

COMMON_PASSWORDS = frozenset({'password', '12345678', 'admin123', 'qwerty'})
SPECIAL_CHARACTERS = r"""!@#$%^&*()_+\-=\[\]{};':"\\|,.<>/?"""
TEMP_PASSWORD_CHARSET = string.ascii_letters + string.digits + '!@#$%^&*'

# ============================================
# 密碼工具
# ============================================

def get_bcrypt():
    """從 Flask app extensions 取得 bcrypt 實例 (不用 global variable)"""
    return current_app.extensions['bcrypt']


def hash_secret(value):
    return get_bcrypt().generate_password_hash(value).decode('utf-8')


def check_secret(hashed, value):
    return get_bcrypt().check_password_hash(hashed, value)


def validate_password_strength(password):
    """
    Returns:
        str | None: 錯誤訊息,通過時回傳 None
    """
    min_length = current_app.config.get('PASSWORD_MIN_LENGTH', 8)
    if len(password) < min_length:
        return f"Password must be at least {min_length} characters long."
    if not re.search(r'[a-z]', password):
        return 'Password must contain at least one lowercase letter.'
    if not re.search(r'[A-Z]', password):
        return 'Password must contain at least one uppercase letter.'
    if not re.search(r'\d', password):
        return 'Password must contain at least one number.'
    if not re.search(f"[{SPECIAL_CHARACTERS}]", password):
        return 'Password must contain at least one special character.'
    if password.lower() in COMMON_PASSWORDS:
        return 'Password is too common. Please choose a stronger password.'
    return None


def _require_strong_password(password):
    error = validate_password_strength(password)
    if error:
        raise ValidationError(error)


def generate_temp_password(length=None):
    length = length or current_app.config.get('TEMP_PASSWORD_LENGTH', 10)
    return ''.join(secrets.choice(TEMP_PASSWORD_CHARSET) for _ in range(length))


def generate_otp():
    return f"{secrets.randbelow(900000) + 100000}"


def _set_password(user, password):
    user.password_hash = hash_secret(password)
    user.is_temp_password_active = False
    user.last_password_change = utcnow()

# ============================================
# 登入
# ============================================

def authenticate(email, password):
    """
    驗證帳密

    不區分是 email 錯還是密碼錯,避免帳號枚舉
    """
    user = repository.find_user_by_email(email)
    if user is None or not check_secret(user.password_hash, password):
        logger.warning(f"Failed login attempt for email: {email}")
        raise AuthenticationError('Invalid credentials.')

    if not user.is_active:
        logger.warning(f"Inactive user login attempt: {user.email}")
        raise AuthorizationError('Account is deactivated. Contact an administrator.')

    user.last_active = utcnow()
    db.session.flush()
    logger.info(f"User logged in: {user.email}")
    return user


def set_new_password(user, new_password):
    """暫時密碼狀態下設定正式密碼"""
    if not user.is_temp_password_active:
        raise StateError('Password already set.')
    _require_strong_password(new_password)

    _set_password(user, new_password)
    db.session.flush()
    logger.info(f"Temporary password replaced for user: {user.email}")
    return user, []

# ============================================
# OTP 重設密碼
# ============================================

def request_password_reset(email):
    """
    產生重設密碼的 OTP

    不管 email 存不存在都回傳相同結果,呼叫端只拿到 effects
    """
    user = repository.find_user_by_email(email)
    if user is None or not user.is_active:
        logger.info(f"Password reset requested for unknown or inactive email: {email}")
        return None, []

    # 同一個用途只保留一組有效的 OTP
    for otp in list(user.otp_requests):
        if otp.purpose == OtpPurpose.PASSWORD_RESET:
            user.otp_requests.remove(otp)

    code = generate_otp()
    expires_minutes = current_app.config.get('OTP_EXPIRES_MINUTES', 10)
    user.otp_requests.append(OtpRequest(
        code_hash=hash_secret(code),
        purpose=OtpPurpose.PASSWORD_RESET,
        expires_at=utcnow() + timedelta(minutes=expires_minutes),
        used=False,
    ))
    db.session.flush()

    logger.info(f"Password reset OTP issued for user: {user.email}")
    return user, [Effect('password_reset_otp', user.id, {
        'otp': code,
        'expiresMinutes': expires_minutes,
    })]


def verify_password_reset(email, otp_code):
    user = repository.find_user_by_email(email)
    if user is None:
        raise NotFoundError('Invalid OTP or user not found.')

    now = utcnow()
    pending = [
        otp for otp in user.otp_requests
        if otp.purpose == OtpPurpose.PASSWORD_RESET and not otp.used and otp.expires_at > now
    ]
    if not pending:
        raise NotFoundError('OTP not found or expired.')

    otp = pending[-1]
    if not check_secret(otp.code_hash, otp_code):
        logger.warning(f"Invalid OTP attempt for user: {user.email}")
        raise ValidationError('Invalid OTP.')

    otp.used = True
    otp.used_at = now
    db.session.flush()
    logger.info(f"Password reset OTP verified for user: {user.email}")
    return user, []


def change_password(email, otp_code, new_password):
    """
    用驗證過的 OTP 改密碼

    OTP 必須在 OTP_GRACE_MINUTES 內驗證過
    """
    _require_strong_password(new_password)

    user = repository.find_user_by_email(email)
    if user is None:
        raise NotFoundError('Invalid request.')

    grace = timedelta(minutes=current_app.config.get('OTP_GRACE_MINUTES', 5))
    cutoff = utcnow() - grace
    verified = [
        otp for otp in user.otp_requests
        if otp.purpose == OtpPurpose.PASSWORD_RESET
        and otp.used and otp.used_at and otp.used_at >= cutoff
        and check_secret(otp.code_hash, otp_code)
    ]
    if not verified:
        raise StateError('OTP verification required first.')

    _set_password(user, new_password)
    for otp in verified:
        user.otp_requests.remove(otp)
    db.session.flush()

    logger.info(f"Password changed via OTP for user: {user.email}")
    return user, [Effect('password_changed', user.id, {})]

# ============================================
# 使用者管理 (admin)
# ============================================

def _require_admin(caller):
    if not access.is_admin(caller):
        logger.warning(f"Non-admin user {caller.user_id} attempted user administration")
        raise AuthorizationError('Access denied. Insufficient permissions.')


def _ensure_unique_email(email, exclude_user_id=None):
    existing = repository.find_user_by_email(email)
    if existing is not None and existing.id != exclude_user_id:
        raise StateError('User with this email already exists.')


def create_user(caller, data):
    _require_admin(caller)
    if data['global_role'] not in GlobalRole.ALL:
        raise ValidationError('Invalid global role.')
    _ensure_unique_email(data['email'])

    temp_password = generate_temp_password()
    user = User(
        email=data['email'].strip().lower(),
        fname=data['fname'],
        lname=data.get('lname'),
        global_role=data['global_role'],
        password_hash=hash_secret(temp_password),
        is_temp_password_active=True,
        project_assignments=[],
        created_by=caller.user_id,
    )
    db.session.add(user)
    db.session.flush()

    logger.info(f"User {user.id} ({user.email}) created by admin {caller.user_id}")
    return user, [Effect('welcome', user.id, {
        'email': user.email,
        'tempPassword': temp_password,
    })]


def update_user(caller, user_id, patch):
    _require_admin(caller)
    user = repository.get_user(user_id)

    if 'email' in patch:
        _ensure_unique_email(patch['email'], exclude_user_id=user.id)
        patch = dict(patch, email=patch['email'].strip().lower())
    if 'global_role' in patch and patch['global_role'] not in GlobalRole.ALL:
        raise ValidationError('Invalid global role.')

    for field in ('fname', 'lname', 'email', 'global_role'):
        if field in patch:
            setattr(user, field, patch[field])
    user.updated_by = caller.user_id
    db.session.flush()

    logger.info(f"User {user.id} updated by admin {caller.user_id}: {sorted(patch.keys())}")
    return user, []


def set_user_status(caller, user_id, is_active):
    _require_admin(caller)
    user = repository.get_user(user_id)
    if user.id == caller.user_id:
        raise StateError('You cannot change your own status.')
    if bool(user.is_active) == bool(is_active):
        state = 'active' if is_active else 'inactive'
        raise StateError(f"User is already {state}.")

    user.is_active = bool(is_active)
    user.updated_by = caller.user_id
    db.session.flush()

    logger.info(f"User {user.id} status set to {'active' if is_active else 'inactive'} by admin {caller.user_id}")
    return user, [Effect('account_status', user.id, {
        'isActive': user.is_active,
        'actorId': caller.user_id,
    })]


def delete_user(caller, user_id):
    _require_admin(caller)
    user = repository.get_user(user_id)
    if user.id == caller.user_id:
        raise StateError('You cannot delete your own account.')

    user.soft_delete(caller.user_id)
    db.session.flush()
    logger.info(f"User {user.id} deleted by admin {caller.user_id}")
    return user, []


def restore_user(caller, user_id):
    _require_admin(caller)
    user = repository.get_user(user_id, include_deleted=True)
    if not user.is_deleted:
        raise NotFoundError('Deleted user not found.')
    _ensure_unique_email(user.email, exclude_user_id=user.id)

    user.restore()
    db.session.flush()
    logger.info(f"User {user.id} restored by admin {caller.user_id}")
    return user, []
