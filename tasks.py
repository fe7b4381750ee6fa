from flask import Blueprint, request, jsonify
from sqlalchemy.orm import joinedload
from marshmallow import fields, validate
from models import db, Project, Task, TaskStatus, TaskPriority
from auth import caller_required, commit_and_dispatch
from schemas import BaseSchema, DateOrDateTime, load_json, get_pagination, pagination_meta, iso
import access
import repository
import task_workflow
import logging

tasks_bp = Blueprint('tasks', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class SubtaskCreateSchema(BaseSchema):
    """建立子任務驗證"""
    title = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Task title is required'}
    )
    description = fields.Str(validate=validate.Length(max=5000), allow_none=True)
    priority = fields.Str(validate=validate.OneOf(TaskPriority.ALL))
    assigned_to = fields.Int(allow_none=True, data_key='assignedTo')
    estimated_hours = fields.Float(allow_none=True, data_key='estimatedHours',
                                   validate=validate.Range(min=0))
    start_date = DateOrDateTime(allow_none=True, data_key='startDate')
    end_date = DateOrDateTime(allow_none=True, data_key='endDate')


class CreateTaskSchema(SubtaskCreateSchema):
    """建立任務驗證"""
    project_id = fields.Int(required=True, data_key='projectId')
    parent_task_id = fields.Int(allow_none=True, data_key='parentTaskId')


class UpdateTaskSchema(BaseSchema):
    """
    更新任務驗證

    parent_task_id 不在這裡,階層只能在建立時決定
    """
    title = fields.Str(validate=validate.Length(min=1, max=255))
    description = fields.Str(validate=validate.Length(max=5000), allow_none=True)
    status = fields.Str(validate=validate.OneOf(TaskStatus.ALL))
    priority = fields.Str(validate=validate.OneOf(TaskPriority.ALL))
    assigned_to = fields.Int(allow_none=True, data_key='assignedTo')
    estimated_hours = fields.Float(allow_none=True, data_key='estimatedHours',
                                   validate=validate.Range(min=0))
    actual_hours = fields.Float(data_key='actualHours', validate=validate.Range(min=0))
    start_date = DateOrDateTime(allow_none=True, data_key='startDate')
    end_date = DateOrDateTime(allow_none=True, data_key='endDate')

# ============================================
# 序列化
# ============================================

def _person(user):
    if user is None:
        return None
    return {'id': user.id, 'fname': user.fname, 'lname': user.lname, 'email': user.email}


def serialize_task(task):
    return {
        'id': task.id,
        'taskNumber': task.task_number,
        'title': task.title,
        'description': task.description,
        'status': task.status,
        'priority': task.priority,
        'project': {'id': task.project.id, 'title': task.project.title},
        'parentTask': {
            'id': task.parent.id,
            'title': task.parent.title,
            'taskNumber': task.parent.task_number
        } if task.parent_task_id else None,
        'assignedTo': _person(task.assignee),
        'createdBy': _person(task.creator),
        'estimatedHours': task.estimated_hours,
        'actualHours': round(task.actual_hours or 0, 2),
        'startDate': iso(task.start_date),
        'endDate': iso(task.end_date),
        'completedAt': iso(task.completed_at),
        'isDeleted': task.is_deleted,
        'deletedAt': iso(task.deleted_at),
        'deletedBy': task.deleted_by,
        'createdAt': iso(task.created_at),
        'updatedAt': iso(task.updated_at),
    }

# ============================================
# 建立任務
# ============================================

@tasks_bp.route('', methods=['POST'])
@caller_required()
def create_task(caller):
    """在專案中建立任務 (admin 或專案 leader)"""
    result = load_json(CreateTaskSchema)
    task, effects = task_workflow.create_task(caller, result)
    commit_and_dispatch(effects)

    return jsonify({
        'message': 'Task created successfully.',
        'task': serialize_task(task)
    }), 201

# ============================================
# 查詢任務
# ============================================

def _visible_task_query(caller):
    visible_ids = [p.id for p in repository.visible_projects_query(caller).with_entities(Project.id)]
    return Task.query.filter(Task.project_id.in_(visible_ids), Task.is_deleted.is_(False))


@tasks_bp.route('', methods=['GET'])
@caller_required()
def list_tasks(caller):
    """
    查詢任務列表

    只會回傳使用者看得到的專案裡的任務,支援狀態、負責人、優先級與關鍵字篩選
    """
    page, limit = get_pagination()

    project_id = request.args.get('projectId', type=int)
    if project_id:
        project = repository.get_project(project_id)
        access.check_project_read(caller, project)
        query = Task.query.filter(Task.project_id == project.id, Task.is_deleted.is_(False))
    else:
        query = _visible_task_query(caller)

    status = request.args.get('status')
    if status:
        query = query.filter(Task.status == status)

    assigned_to = request.args.get('assignedTo', type=int)
    if assigned_to:
        query = query.filter(Task.assigned_to == assigned_to)

    priority = request.args.get('priority')
    if priority:
        query = query.filter(Task.priority == priority)

    search = request.args.get('search', '').strip()
    if search:
        pattern = f"%{search}%"
        query = query.filter(db.or_(
            Task.title.ilike(pattern),
            Task.description.ilike(pattern),
            Task.task_number.ilike(pattern)
        ))

    paginated = query.options(
        joinedload(Task.assignee),
        joinedload(Task.creator),
        joinedload(Task.project)
    ).order_by(Task.created_at.desc(), Task.id.desc()).paginate(
        page=page, per_page=limit, error_out=False
    )

    return jsonify({
        'tasks': [serialize_task(t) for t in paginated.items],
        'pagination': pagination_meta(paginated, page, limit)
    }), 200


@tasks_bp.route('/stats', methods=['GET'])
@caller_required()
def task_stats(caller):
    """任務統計:各狀態數量、工時、逾期數"""
    project_id = request.args.get('projectId', type=int)
    if project_id:
        project = repository.get_project(project_id)
        access.check_project_read(caller, project)
        scope = [project.id]
    else:
        scope = [p.id for p in repository.visible_projects_query(caller).with_entities(Project.id)]

    return jsonify(repository.task_stats(scope)), 200


@tasks_bp.route('/<int:task_id>', methods=['GET'])
@caller_required()
def get_task(caller, task_id):
    task = repository.get_task(task_id)
    access.check_task_read(caller, task)
    return jsonify({'task': serialize_task(task)}), 200

# ============================================
# 更新 / 刪除 / 還原任務
# ============================================

@tasks_bp.route('/<int:task_id>', methods=['PUT', 'PATCH'])
@caller_required()
def update_task(caller, task_id):
    """
    更新任務

    被指派的成員只能改 status 與 actualHours
    """
    result = load_json(UpdateTaskSchema)
    task, effects = task_workflow.update_task(caller, task_id, result)
    commit_and_dispatch(effects)

    return jsonify({
        'message': 'Task updated successfully.',
        'task': serialize_task(task)
    }), 200


@tasks_bp.route('/<int:task_id>', methods=['DELETE'])
@caller_required()
def delete_task(caller, task_id):
    _, effects = task_workflow.delete_task(caller, task_id)
    commit_and_dispatch(effects)
    return jsonify({'message': 'Task deleted successfully.'}), 200


@tasks_bp.route('/<int:task_id>/restore', methods=['PUT'])
@caller_required()
def restore_task(caller, task_id):
    task, effects = task_workflow.restore_task(caller, task_id)
    commit_and_dispatch(effects)

    return jsonify({
        'message': 'Task restored successfully.',
        'task': serialize_task(task)
    }), 200

# ============================================
# 子任務
# ============================================

@tasks_bp.route('/<int:task_id>/subtasks', methods=['POST'])
@caller_required()
def create_subtask(caller, task_id):
    result = load_json(SubtaskCreateSchema)
    subtask, effects = task_workflow.create_subtask(caller, task_id, result)
    commit_and_dispatch(effects)

    return jsonify({
        'message': 'Subtask created successfully.',
        'task': serialize_task(subtask)
    }), 201


@tasks_bp.route('/<int:task_id>/subtasks', methods=['GET'])
@caller_required()
def list_subtasks(caller, task_id):
    parent = repository.get_task(task_id)
    access.check_task_read(caller, parent)

    subtasks = repository.list_subtasks(parent.id)
    return jsonify({
        'parentTask': {'id': parent.id, 'title': parent.title, 'taskNumber': parent.task_number},
        'subtasks': [serialize_task(t) for t in subtasks],
        'total': len(subtasks)
    }), 200


@tasks_bp.route('/<int:task_id>/subtasks/<int:subtask_id>', methods=['GET'])
@caller_required()
def get_subtask(caller, task_id, subtask_id):
    parent = repository.get_task(task_id)
    access.check_task_read(caller, parent)
    subtask = repository.get_subtask(parent.id, subtask_id)
    return jsonify({'task': serialize_task(subtask)}), 200


@tasks_bp.route('/<int:task_id>/subtasks/<int:subtask_id>', methods=['PUT', 'PATCH'])
@caller_required()
def update_subtask(caller, task_id, subtask_id):
    result = load_json(UpdateTaskSchema)
    subtask, effects = task_workflow.update_subtask(caller, task_id, subtask_id, result)
    commit_and_dispatch(effects)

    return jsonify({
        'message': 'Subtask updated successfully.',
        'task': serialize_task(subtask)
    }), 200


@tasks_bp.route('/<int:task_id>/subtasks/<int:subtask_id>', methods=['DELETE'])
@caller_required()
def delete_subtask(caller, task_id, subtask_id):
    _, effects = task_workflow.delete_subtask(caller, task_id, subtask_id)
    commit_and_dispatch(effects)
    return jsonify({'message': 'Subtask deleted successfully.'}), 200


@tasks_bp.route('/<int:task_id>/subtasks/<int:subtask_id>/restore', methods=['PUT'])
@caller_required()
def restore_subtask(caller, task_id, subtask_id):
    subtask, effects = task_workflow.restore_subtask(caller, task_id, subtask_id)
    commit_and_dispatch(effects)

    return jsonify({
        'message': 'Subtask restored successfully.',
        'task': serialize_task(subtask)
    }), 200
