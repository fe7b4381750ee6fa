from flask import Blueprint, request, jsonify
from sqlalchemy import func, case
from marshmallow import fields, validate
from models import db, Project, ProjectMember, Task, ProjectStatus, TaskStatus
from auth import caller_required, commit_and_dispatch
from schemas import BaseSchema, DateOrDateTime, load_json, get_pagination, pagination_meta, iso
import access
import project_service
import repository
import logging

projects_bp = Blueprint('projects', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class MemberSchema(BaseSchema):
    user_id = fields.Int(required=True, data_key='userId')
    project_role = fields.Str(data_key='projectRole', allow_none=True,
                              validate=validate.Length(max=50))


class CreateProjectSchema(BaseSchema):
    """建立專案驗證"""
    title = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=100),
        error_messages={'required': 'Project title is required'}
    )
    description = fields.Str(required=True, validate=validate.Length(min=1, max=5000))
    start_date = DateOrDateTime(required=True, data_key='startDate')
    end_date = DateOrDateTime(required=True, data_key='endDate')
    leader_id = fields.Int(required=True, data_key='leaderId')
    status = fields.Str(validate=validate.OneOf(ProjectStatus.ALL))
    members = fields.List(fields.Nested(MemberSchema), load_default=list)


class UpdateProjectSchema(BaseSchema):
    """更新專案驗證"""
    title = fields.Str(validate=validate.Length(min=1, max=100))
    description = fields.Str(validate=validate.Length(min=1, max=5000))
    start_date = DateOrDateTime(data_key='startDate')
    end_date = DateOrDateTime(data_key='endDate')
    leader_id = fields.Int(data_key='leaderId')
    status = fields.Str(validate=validate.OneOf(ProjectStatus.ALL))
    members = fields.List(fields.Nested(MemberSchema))

# ============================================
# 序列化
# ============================================

def serialize_member(member):
    user = member.user
    return {
        'userId': member.user_id,
        'fname': user.fname if user else None,
        'lname': user.lname if user else None,
        'email': user.email if user else None,
        'globalRole': user.global_role if user else None,
        'projectRole': member.project_role,
        'assignedAt': iso(member.assigned_at),
        'assignedBy': member.assigned_by,
    }


def serialize_project(project, include_members=True):
    data = {
        'id': project.id,
        'title': project.title,
        'description': project.description,
        'status': project.status,
        'startDate': iso(project.start_date),
        'endDate': iso(project.end_date),
        'leader': {
            'id': project.leader.id,
            'fname': project.leader.fname,
            'lname': project.leader.lname,
            'email': project.leader.email,
        } if project.leader else None,
        'leaderId': project.leader_id,
        'createdBy': project.created_by,
        'isDeleted': project.is_deleted,
        'deletedAt': iso(project.deleted_at),
        'deletedBy': project.deleted_by,
        'createdAt': iso(project.created_at),
        'updatedAt': iso(project.updated_at),
    }
    if include_members:
        data['members'] = [serialize_member(m) for m in project.members]
    return data

# ============================================
# 建立專案 (admin)
# ============================================

@projects_bp.route('', methods=['POST'])
@caller_required()
def create_project(caller):
    result = load_json(CreateProjectSchema)
    project, effects = project_service.create_project(caller, result)
    commit_and_dispatch(effects)

    return jsonify({
        'message': 'Project created successfully.',
        'project': serialize_project(project)
    }), 201

# ============================================
# 查詢專案
# ============================================

@projects_bp.route('', methods=['GET'])
@caller_required()
def list_projects(caller):
    """
    查詢看得到的專案

    team member: 參與的專案; project manager: 帶領或參與的; admin: 全部
    """
    page, limit = get_pagination()
    query = repository.visible_projects_query(caller)

    status = request.args.get('status')
    if status:
        query = query.filter(Project.status == status)

    search = request.args.get('search', '').strip()
    if search:
        query = query.filter(Project.title.ilike(f"%{search}%"))

    paginated = query.order_by(Project.created_at.desc()).paginate(
        page=page, per_page=limit, error_out=False
    )

    return jsonify({
        'projects': [serialize_project(p) for p in paginated.items],
        'pagination': pagination_meta(paginated, page, limit)
    }), 200


@projects_bp.route('/analytics/stats', methods=['GET'])
@caller_required()
def project_analytics(caller):
    """看得到的專案依狀態統計,加上任務總數"""
    visible_ids = [p.id for p in repository.visible_projects_query(caller).with_entities(Project.id)]

    by_status = {status: 0 for status in ProjectStatus.ALL}
    if visible_ids:
        rows = db.session.query(Project.status, func.count(Project.id)) \
            .filter(Project.id.in_(visible_ids)) \
            .group_by(Project.status).all()
        for status, count in rows:
            by_status[status] = count

    task_stats = db.session.query(
        func.count(Task.id).label('total'),
        func.sum(case((Task.status == TaskStatus.DONE, 1), else_=0)).label('done')
    ).filter(Task.project_id.in_(visible_ids), Task.is_deleted.is_(False)).first()

    total_tasks = task_stats.total or 0
    done_tasks = task_stats.done or 0

    return jsonify({
        'totalProjects': len(visible_ids),
        'byStatus': by_status,
        'tasks': {
            'total': total_tasks,
            'done': done_tasks,
            'completionRate': round(done_tasks / total_tasks * 100, 2) if total_tasks else 0
        }
    }), 200


@projects_bp.route('/<int:project_id>', methods=['GET'])
@caller_required()
def get_project(caller, project_id):
    project = repository.get_project(project_id)
    access.check_project_read(caller, project)
    return jsonify({'project': serialize_project(project)}), 200


@projects_bp.route('/<int:project_id>/members', methods=['GET'])
@caller_required()
def get_project_members(caller, project_id):
    project = repository.get_project(project_id)
    access.check_project_read(caller, project)
    return jsonify({
        'members': [serialize_member(m) for m in project.members],
        'total': len(project.members)
    }), 200


@projects_bp.route('/<int:project_id>/stats', methods=['GET'])
@caller_required()
def get_project_stats(caller, project_id):
    """
    取得專案統計資訊

    使用聚合查詢避免 N+1 問題
    """
    project = repository.get_project(project_id)
    access.check_project_read(caller, project)

    stats = repository.task_stats([project.id])
    member_count = ProjectMember.query.filter_by(project_id=project.id).count()

    return jsonify({
        'tasks': {
            'total': stats['total'],
            'byStatus': stats['byStatus'],
            'overdue': stats['overdue']
        },
        'hours': {
            'estimated': stats['estimatedHours'],
            'actual': stats['actualHours']
        },
        'members': member_count,
        'completionRate': stats['completionRate']
    }), 200

# ============================================
# 更新 / 刪除 / 還原
# ============================================

@projects_bp.route('/<int:project_id>', methods=['PUT', 'PATCH'])
@caller_required()
def update_project(caller, project_id):
    result = load_json(UpdateProjectSchema)
    project, effects = project_service.update_project(caller, project_id, result)
    commit_and_dispatch(effects)

    return jsonify({
        'message': 'Project updated successfully.',
        'project': serialize_project(project)
    }), 200


@projects_bp.route('/<int:project_id>', methods=['DELETE'])
@caller_required()
def delete_project(caller, project_id):
    _, effects = project_service.delete_project(caller, project_id)
    commit_and_dispatch(effects)
    return jsonify({'message': 'Project deleted successfully.'}), 200


@projects_bp.route('/<int:project_id>/restore', methods=['PUT'])
@caller_required()
def restore_project(caller, project_id):
    project, effects = project_service.restore_project(caller, project_id)
    commit_and_dispatch(effects)

    return jsonify({
        'message': 'Project restored successfully.',
        'project': serialize_project(project)
    }), 200
