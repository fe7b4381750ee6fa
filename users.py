from flask import Blueprint, request, jsonify
from marshmallow import fields, validate
from models import db, User, GlobalRole
from auth import caller_required, commit_and_dispatch, serialize_user
from schemas import BaseSchema, load_json, get_pagination, pagination_meta
import account_service
import repository
import logging

users_bp = Blueprint('users', __name__)
logger = logging.getLogger(__name__)

ADMIN_ONLY = (GlobalRole.ADMIN,)

# ============================================
# Input Validation Schemas
# ============================================

class CreateUserSchema(BaseSchema):
    """建立使用者驗證"""
    email = fields.Email(required=True)
    fname = fields.Str(required=True, validate=validate.Length(min=1, max=100))
    lname = fields.Str(validate=validate.Length(max=100), allow_none=True)
    global_role = fields.Str(required=True, data_key='globalRole',
                             validate=validate.OneOf(GlobalRole.ALL))


class UpdateUserSchema(BaseSchema):
    """更新使用者驗證"""
    email = fields.Email()
    fname = fields.Str(validate=validate.Length(min=1, max=100))
    lname = fields.Str(validate=validate.Length(max=100), allow_none=True)
    global_role = fields.Str(data_key='globalRole', validate=validate.OneOf(GlobalRole.ALL))


class UserStatusSchema(BaseSchema):
    is_active = fields.Bool(required=True, data_key='isActive')

# ============================================
# 使用者管理 (只有 admin)
# ============================================

@users_bp.route('', methods=['POST'])
@caller_required(roles=ADMIN_ONLY)
def create_user(caller):
    result = load_json(CreateUserSchema)
    user, effects = account_service.create_user(caller, result)
    commit_and_dispatch(effects)

    return jsonify({
        'message': 'User created successfully. Temporary password sent via email.',
        'user': serialize_user(user, detailed=True)
    }), 201


@users_bp.route('', methods=['GET'])
@caller_required(roles=ADMIN_ONLY)
def list_users(caller):
    """查詢使用者 (支援名字與 email 搜尋)"""
    page, limit = get_pagination()

    query = User.query.filter(User.is_deleted.is_(False))

    search = request.args.get('search', '').strip()
    if search:
        pattern = f"%{search}%"
        query = query.filter(db.or_(
            User.fname.ilike(pattern),
            User.lname.ilike(pattern),
            User.email.ilike(pattern)
        ))

    role = request.args.get('globalRole')
    if role:
        query = query.filter(User.global_role == role)

    paginated = query.order_by(User.created_at.desc()).paginate(
        page=page, per_page=limit, error_out=False
    )

    return jsonify({
        'users': [serialize_user(u, detailed=True) for u in paginated.items],
        'pagination': pagination_meta(paginated, page, limit)
    }), 200


@users_bp.route('/<int:user_id>', methods=['GET'])
@caller_required(roles=ADMIN_ONLY)
def get_user(caller, user_id):
    user = repository.get_user(user_id)
    return jsonify({'user': serialize_user(user, detailed=True)}), 200


@users_bp.route('/<int:user_id>', methods=['PUT'])
@caller_required(roles=ADMIN_ONLY)
def update_user(caller, user_id):
    result = load_json(UpdateUserSchema)
    user, effects = account_service.update_user(caller, user_id, result)
    commit_and_dispatch(effects)

    return jsonify({
        'message': 'User updated successfully.',
        'user': serialize_user(user, detailed=True)
    }), 200


@users_bp.route('/<int:user_id>/status', methods=['PATCH'])
@caller_required(roles=ADMIN_ONLY)
def update_user_status(caller, user_id):
    result = load_json(UserStatusSchema)
    user, effects = account_service.set_user_status(caller, user_id, result['is_active'])
    commit_and_dispatch(effects)

    state = 'activated' if user.is_active else 'deactivated'
    return jsonify({
        'message': f"User {state} successfully.",
        'user': serialize_user(user)
    }), 200


@users_bp.route('/<int:user_id>', methods=['DELETE'])
@caller_required(roles=ADMIN_ONLY)
def delete_user(caller, user_id):
    _, effects = account_service.delete_user(caller, user_id)
    commit_and_dispatch(effects)
    return jsonify({'message': 'User deleted successfully.'}), 200


@users_bp.route('/<int:user_id>/restore', methods=['PUT'])
@caller_required(roles=ADMIN_ONLY)
def restore_user(caller, user_id):
    user, effects = account_service.restore_user(caller, user_id)
    commit_and_dispatch(effects)

    return jsonify({
        'message': 'User restored successfully.',
        'user': serialize_user(user, detailed=True)
    }), 200
