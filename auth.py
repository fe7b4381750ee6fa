from functools import wraps
from flask import Blueprint, jsonify, current_app
from flask_jwt_extended import create_access_token, create_refresh_token, jwt_required, get_jwt_identity
from marshmallow import fields, validate
from models import db
from access import Caller
from errors import AuthenticationError, AuthorizationError
from schemas import BaseSchema, load_json, iso
from effects import dispatch_effects
from extensions import limiter
import account_service
import repository
import logging

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)

GENERIC_RESET_MESSAGE = 'If the email exists, an OTP will be sent.'


def auth_rate_limit():
    return current_app.config.get('AUTH_RATE_LIMIT', '10 per minute')

# ============================================
# Input Validation Schemas (用 marshmallow)
# ============================================

class LoginSchema(BaseSchema):
    """登入輸入驗證"""
    email = fields.Email(required=True, error_messages={
        'required': 'Email is required',
        'invalid': 'Invalid email format'
    })
    password = fields.Str(required=True, error_messages={'required': 'Password is required'})


class SetNewPasswordSchema(BaseSchema):
    new_password = fields.Str(required=True, data_key='newPassword',
                              validate=validate.Length(max=128))


class RequestResetSchema(BaseSchema):
    email = fields.Email(required=True)


class VerifyResetSchema(BaseSchema):
    email = fields.Email(required=True)
    otp = fields.Str(required=True, validate=validate.Regexp(r'^\d{6}$', error='OTP must be 6 digits'))


class ChangePasswordSchema(BaseSchema):
    """密碼修改驗證"""
    email = fields.Email(required=True)
    otp = fields.Str(required=True, validate=validate.Regexp(r'^\d{6}$', error='OTP must be 6 digits'))
    new_password = fields.Str(required=True, data_key='newPassword',
                              validate=validate.Length(max=128))

# ============================================
# 身分驗證 decorator (供其他模組使用)
# ============================================

def caller_required(roles=None, allow_temp_password=False):
    """
    驗證 JWT 並把 Caller 當第一個參數傳進 view

    Args:
        roles: 允許的全域角色,None 代表全部
        allow_temp_password: 暫時密碼狀態下是否可以使用
    """
    def decorator(fn):
        @wraps(fn)
        @jwt_required()
        def wrapper(*args, **kwargs):
            user = current_user_or_401()

            if user.is_temp_password_active and not allow_temp_password:
                raise AuthorizationError('Password reset required.', requiresPasswordReset=True)

            if roles and user.global_role not in roles:
                logger.warning(f"User {user.id} ({user.global_role}) denied: requires {roles}")
                raise AuthorizationError('Access denied. Insufficient permissions.')

            return fn(Caller.from_user(user), *args, **kwargs)
        return wrapper
    return decorator


def current_user_or_401():
    """取得 token 對應的使用者,已刪除或停用都視為無效"""
    identity = get_jwt_identity()
    try:
        user_id = int(identity)
    except (TypeError, ValueError):
        raise AuthenticationError('Token is invalid or user not found.')

    user = repository.find_user(user_id)
    if user is None or not user.is_active:
        logger.warning(f"Token valid but user not found or inactive: {identity}")
        raise AuthenticationError('Token is invalid or user not found.')
    return user


def commit_and_dispatch(effects):
    """commit 之後才送出 effects,送失敗不影響結果"""
    db.session.commit()
    if effects:
        dispatch_effects(effects)

# ============================================
# 序列化
# ============================================

def serialize_user(user, detailed=False):
    data = {
        'id': user.id,
        'email': user.email,
        'fname': user.fname,
        'lname': user.lname,
        'fullName': user.full_name,
        'globalRole': user.global_role,
        'isActive': user.is_active,
    }
    if detailed:
        data.update({
            'avatarUrl': user.avatar_url,
            'projectAssignments': user.project_assignments or [],
            'isTempPassword': user.is_temp_password_active,
            'lastActive': iso(user.last_active),
            'lastPasswordChange': iso(user.last_password_change),
            'isDeleted': user.is_deleted,
            'deletedAt': iso(user.deleted_at),
            'deletedBy': user.deleted_by,
            'createdAt': iso(user.created_at),
            'updatedAt': iso(user.updated_at),
        })
    return data


def _issue_tokens(user):
    claims = {'globalRole': user.global_role}
    return (
        create_access_token(identity=str(user.id), additional_claims=claims),
        create_refresh_token(identity=str(user.id), additional_claims=claims),
    )

# ============================================
# 登入 API
# ============================================

@auth_bp.route('/login', methods=['POST'])
@limiter.limit(auth_rate_limit)
def login():
    """
    使用者登入

    不區分 email/password 錯誤,避免帳號枚舉攻擊
    """
    result = load_json(LoginSchema)
    user = account_service.authenticate(result['email'], result['password'])
    db.session.commit()

    access_token, refresh_token = _issue_tokens(user)

    return jsonify({
        'message': 'Login successful',
        'accessToken': access_token,
        'refreshToken': refresh_token,
        'isTempPassword': user.is_temp_password_active,
        'user': serialize_user(user)
    }), 200

# ============================================
# Token 刷新 API
# ============================================

@auth_bp.route('/refresh', methods=['POST'])
@jwt_required(refresh=True)
def refresh():
    """用 refresh token 換新的 access token"""
    user = current_user_or_401()
    access_token = create_access_token(
        identity=str(user.id),
        additional_claims={'globalRole': user.global_role}
    )

    return jsonify({
        'message': 'Token refreshed successfully',
        'accessToken': access_token
    }), 200

# ============================================
# 登出 API
# ============================================

@auth_bp.route('/logout', methods=['POST'])
@caller_required()
def logout(caller):
    """
    登出

    token 是 stateless 的,前端丟掉 token 即可
    """
    logger.info(f"User logged out: {caller.user_id}")
    return jsonify({'message': 'Logged out successfully.'}), 200

# ============================================
# 取得當前使用者資訊
# ============================================

@auth_bp.route('/me', methods=['GET'])
@caller_required()
def get_me(caller):
    user = repository.get_user(caller.user_id)
    return jsonify({'user': serialize_user(user, detailed=True)}), 200

# ============================================
# 暫時密碼 -> 正式密碼
# ============================================

@auth_bp.route('/set-new-password', methods=['PUT'])
@caller_required(allow_temp_password=True)
def set_new_password(caller):
    result = load_json(SetNewPasswordSchema)
    user = repository.get_user(caller.user_id)

    user, effects = account_service.set_new_password(user, result['new_password'])
    commit_and_dispatch(effects)

    return jsonify({
        'message': 'Password set successfully.',
        'user': serialize_user(user)
    }), 200

# ============================================
# OTP 重設密碼
# ============================================

@auth_bp.route('/request-password-reset', methods=['POST'])
@limiter.limit(auth_rate_limit)
def request_password_reset():
    """不管 email 存不存在都回傳同一個訊息"""
    result = load_json(RequestResetSchema)
    _, effects = account_service.request_password_reset(result['email'])
    commit_and_dispatch(effects)

    return jsonify({'message': GENERIC_RESET_MESSAGE}), 200


@auth_bp.route('/verify-password-reset', methods=['POST'])
@limiter.limit(auth_rate_limit)
def verify_password_reset():
    result = load_json(VerifyResetSchema)
    account_service.verify_password_reset(result['email'], result['otp'])
    db.session.commit()

    return jsonify({'message': 'OTP verified successfully.'}), 200


@auth_bp.route('/change-password', methods=['PUT'])
@limiter.limit(auth_rate_limit)
def change_password():
    result = load_json(ChangePasswordSchema)
    _, effects = account_service.change_password(result['email'], result['otp'], result['new_password'])
    commit_and_dispatch(effects)

    return jsonify({'message': 'Password changed successfully.'}), 200

