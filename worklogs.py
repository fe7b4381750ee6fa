from flask import Blueprint, jsonify
from marshmallow import Schema, fields, validate, EXCLUDE
from sqlalchemy.orm import joinedload
from models import Worklog
from auth import caller_required, commit_and_dispatch
from schemas import BaseSchema, load_json, load_args, get_pagination, pagination_meta, iso
import access
import repository
import worklog_service
import logging

worklogs_bp = Blueprint('worklogs', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class CreateWorklogSchema(BaseSchema):
    """新增工時驗證 (hours 範圍由 service 檢查,錯誤訊息才會一致)"""
    task_id = fields.Int(required=True, data_key='taskId')
    date = fields.Date(required=True)
    hours = fields.Float(required=True)
    description = fields.Str(required=True, validate=validate.Length(min=1, max=500))


class UpdateWorklogSchema(BaseSchema):
    date = fields.Date()
    hours = fields.Float()
    description = fields.Str(validate=validate.Length(min=1, max=500))


class WorklogFilterSchema(Schema):
    """列表與統計共用的 query string"""
    task_id = fields.Int(data_key='taskId')
    user_id = fields.Int(data_key='userId')
    project_id = fields.Int(data_key='projectId')
    start_date = fields.Date(data_key='startDate')
    end_date = fields.Date(data_key='endDate')
    overtime_only = fields.Bool(data_key='overtimeOnly', load_default=False)
    group_by = fields.Str(data_key='groupBy', load_default='user',
                          validate=validate.OneOf(worklog_service.GROUP_BY_OPTIONS))

    class Meta:
        unknown = EXCLUDE

# ============================================
# 序列化
# ============================================

def serialize_worklog(worklog):
    task = worklog.task
    user = worklog.user
    return {
        'id': worklog.id,
        'task': {
            'id': task.id,
            'title': task.title,
            'taskNumber': task.task_number,
            'projectId': task.project_id,
        } if task else None,
        'user': {
            'id': user.id,
            'fname': user.fname,
            'lname': user.lname,
            'email': user.email,
        } if user else None,
        'date': iso(worklog.date),
        'hours': worklog.hours,
        'description': worklog.description,
        'isOvertime': worklog.is_overtime,
        'isDeleted': worklog.is_deleted,
        'deletedAt': iso(worklog.deleted_at),
        'deletedBy': worklog.deleted_by,
        'createdAt': iso(worklog.created_at),
        'updatedAt': iso(worklog.updated_at),
    }

# ============================================
# 新增工時
# ============================================

@worklogs_bp.route('', methods=['POST'])
@caller_required()
def create_worklog(caller):
    """
    新增工時

    超過每日上限的部分會標記為加班,task 的 actual_hours 同步增加
    """
    result = load_json(CreateWorklogSchema)
    worklog, effects = worklog_service.create_worklog(caller, result)
    commit_and_dispatch(effects)

    return jsonify({
        'message': 'Worklog created successfully.',
        'worklog': serialize_worklog(worklog),
        'taskActualHours': round(worklog.task.actual_hours or 0, 2)
    }), 201

# ============================================
# 查詢工時
# ============================================

@worklogs_bp.route('', methods=['GET'])
@caller_required()
def list_worklogs(caller):
    page, limit = get_pagination()
    filters = load_args(WorklogFilterSchema)

    query = worklog_service.apply_filters(worklog_service.scoped_worklog_query(caller), filters)
    paginated = query.options(
        joinedload(Worklog.task),
        joinedload(Worklog.user)
    ).order_by(Worklog.date.desc(), Worklog.id.desc()).paginate(
        page=page, per_page=limit, error_out=False
    )

    return jsonify({
        'worklogs': [serialize_worklog(w) for w in paginated.items],
        'pagination': pagination_meta(paginated, page, limit)
    }), 200


@worklogs_bp.route('/summary', methods=['GET'])
@worklogs_bp.route('/insights', methods=['GET'])
@caller_required()
def worklog_summary(caller):
    """依 groupBy (user / task / project / date) 統計工時"""
    filters = load_args(WorklogFilterSchema)
    group_by = filters.pop('group_by')
    return jsonify(worklog_service.get_worklog_summary(caller, filters, group_by)), 200


@worklogs_bp.route('/<int:worklog_id>', methods=['GET'])
@caller_required()
def get_worklog(caller, worklog_id):
    worklog = repository.get_worklog(worklog_id)
    access.check_worklog_read(caller, worklog)
    return jsonify({'worklog': serialize_worklog(worklog)}), 200

# ============================================
# 更新 / 刪除 / 還原
# ============================================

@worklogs_bp.route('/<int:worklog_id>', methods=['PUT', 'PATCH'])
@caller_required()
def update_worklog(caller, worklog_id):
    result = load_json(UpdateWorklogSchema)
    worklog, effects = worklog_service.update_worklog(caller, worklog_id, result)
    commit_and_dispatch(effects)

    return jsonify({
        'message': 'Worklog updated successfully.',
        'worklog': serialize_worklog(worklog)
    }), 200


@worklogs_bp.route('/<int:worklog_id>', methods=['DELETE'])
@caller_required()
def delete_worklog(caller, worklog_id):
    """只能在建立後的時間窗內刪除"""
    _, effects = worklog_service.delete_worklog(caller, worklog_id)
    commit_and_dispatch(effects)
    return jsonify({'message': 'Worklog deleted successfully.'}), 200


@worklogs_bp.route('/<int:worklog_id>/restore', methods=['PUT'])
@caller_required()
def restore_worklog(caller, worklog_id):
    worklog, effects = worklog_service.restore_worklog(caller, worklog_id)
    commit_and_dispatch(effects)

    return jsonify({
        'message': 'Worklog restored successfully.',
        'worklog': serialize_worklog(worklog)
    }), 200
