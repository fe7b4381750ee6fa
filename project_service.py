"""
專案與成員管理

成員規則:
- 同一個人不能重複出現
- 已刪除的使用者不能加入
- 只有 team_member 和 project_manager 可以是成員
- leader 一定要在成員名單裡,沒放就自動補上 (角色 LEADER)
"""
import logging

from models import db, User, Project, ProjectMember, GlobalRole, ProjectRole, ProjectStatus, utcnow
from errors import ValidationError, NotFoundError, StateError
from effects import Effect
import access
import mailer
import repository

logger = logging.getLogger(__name__)

MEMBER_GLOBAL_ROLES = (GlobalRole.TEAM_MEMBER, GlobalRole.PROJECT_MANAGER)

# ============================================
# 驗證
# ============================================

def validate_members(candidates, leader_id, existing=None, actor_id=None, now=None):
    """
    驗證並正規化成員名單

    Args:
        candidates: [{'user_id': int, 'project_role': str|None}, ...]
        leader_id: 專案 leader (新的或目前的)
        existing: 目前的 ProjectMember 列表,用來保留原本的指派時間與指派人

    Returns:
        list[dict]: 正規化後的成員 (user_id, project_role, assigned_at, assigned_by)
    """
    now = now or utcnow()
    existing_by_user = {m.user_id: m for m in (existing or [])}
    seen = set()
    normalized = []

    for candidate in candidates:
        user_id = candidate['user_id']
        if user_id in seen:
            raise StateError(f"Duplicate user {user_id} in members array.")
        seen.add(user_id)

        user = repository.find_user(user_id)
        if user is None:
            raise ValidationError(f"User {user_id} not found.")
        if user.global_role not in MEMBER_GLOBAL_ROLES:
            raise ValidationError(f"User {user_id} must be a team member or project manager.")

        current = existing_by_user.get(user_id)
        role = candidate.get('project_role') or (current.project_role if current else ProjectRole.DEFAULT)
        if user_id == leader_id:
            role = ProjectRole.LEADER
        normalized.append({
            'user_id': user_id,
            'project_role': role,
            'assigned_at': current.assigned_at if current else now,
            'assigned_by': current.assigned_by if current else actor_id,
        })

    if leader_id not in seen:
        current = existing_by_user.get(leader_id)
        normalized.append({
            'user_id': leader_id,
            'project_role': ProjectRole.LEADER,
            'assigned_at': current.assigned_at if current else now,
            'assigned_by': current.assigned_by if current else actor_id,
        })

    return normalized


def _validate_leader(leader_id):
    leader = repository.find_user(leader_id)
    if not access.is_active(leader) or leader.global_role != GlobalRole.PROJECT_MANAGER:
        raise ValidationError('Project leader must be an active project manager.')
    return leader


def _validate_dates(start_date, end_date):
    if start_date is None or end_date is None:
        return
    if start_date >= end_date:
        raise ValidationError('Start date must be before end date.')

# ============================================
# 成員快取 (User.project_assignments)
# ============================================

def _sync_assignment_cache(user, project, member=None):
    """更新使用者身上的專案指派快取;member 為 None 代表移除"""
    assignments = [
        a for a in (user.project_assignments or [])
        if a.get('projectId') != project.id
    ]
    if member is not None:
        assignments.append({
            'projectId': project.id,
            'projectRole': member.project_role,
            'assignedAt': member.assigned_at.isoformat() if member.assigned_at else None,
            'assignedBy': member.assigned_by,
        })
    # JSON 欄位要整個重新指定才會被偵測到變更
    user.project_assignments = assignments


def _apply_members(project, normalized):
    """
    把正規化後的名單寫回 ProjectMember

    Returns:
        list[ProjectMember]: 新加入的成員
    """
    current = {m.user_id: m for m in project.members}
    wanted = {entry['user_id'] for entry in normalized}
    added = []

    for member in list(project.members):
        if member.user_id not in wanted:
            project.members.remove(member)
            user = db.session.get(User, member.user_id)
            if user is not None:
                _sync_assignment_cache(user, project)

    for entry in normalized:
        member = current.get(entry['user_id'])
        if member is None:
            member = ProjectMember(
                user_id=entry['user_id'],
                project_role=entry['project_role'],
                assigned_at=entry['assigned_at'],
                assigned_by=entry['assigned_by'],
            )
            project.members.append(member)
            added.append(member)
        else:
            member.project_role = entry['project_role']

    db.session.flush()
    for member in project.members:
        user = db.session.get(User, member.user_id)
        if user is not None:
            _sync_assignment_cache(user, project, member)
    return added


def _promote_leader(project, leader_id, actor_id):
    """
    新 leader 已是成員就改角色,不是就加一列

    Returns:
        list[ProjectMember]: 新加入的成員 (最多一個)
    """
    member = next((m for m in project.members if m.user_id == leader_id), None)
    added = []
    if member is None:
        member = ProjectMember(
            user_id=leader_id,
            project_role=ProjectRole.LEADER,
            assigned_at=utcnow(),
            assigned_by=actor_id,
        )
        project.members.append(member)
        added.append(member)
    else:
        member.project_role = ProjectRole.LEADER

    db.session.flush()
    user = db.session.get(User, leader_id)
    if user is not None:
        _sync_assignment_cache(user, project, member)
    return added


def _assignment_effects(project, members, actor):
    actor_user = repository.find_user(actor.user_id)
    actor_name = actor_user.full_name if actor_user else 'An administrator'
    return [
        Effect('project_assigned', member.user_id, {
            'projectId': project.id,
            'projectTitle': project.title,
            'projectRole': member.project_role,
            'assignedBy': actor_name,
            'actorId': actor.user_id,
            'link': mailer.frontend_link('projects', project.id),
        })
        for member in members
        if member.user_id != actor.user_id
    ]

# ============================================
# 專案 CRUD
# ============================================

def create_project(caller, data):
    """
    建立專案 (只有 admin)

    Args:
        data: title, description, start_date, end_date, leader_id, members, status
    """
    access.check_project_create(caller)

    for field in ('title', 'description', 'start_date', 'end_date', 'leader_id'):
        if not data.get(field):
            raise ValidationError('All fields are required.')

    leader = _validate_leader(data['leader_id'])
    _validate_dates(data['start_date'], data['end_date'])
    normalized = validate_members(data.get('members') or [], leader.id, actor_id=caller.user_id)

    project = Project(
        title=data['title'],
        description=data['description'],
        status=data.get('status') or ProjectStatus.PLANNING,
        leader_id=leader.id,
        start_date=data['start_date'],
        end_date=data['end_date'],
        created_by=caller.user_id,
    )
    db.session.add(project)
    db.session.flush()

    added = _apply_members(project, normalized)
    effects = _assignment_effects(project, added, caller)

    logger.info(f"Project {project.id} '{project.title}' created by user {caller.user_id} with leader {leader.id}")
    return project, effects


def update_project(caller, project_id, patch):
    """
    更新專案 (admin 或 leader)

    換 leader 時新 leader 在名單裡的角色會改成 LEADER,舊 leader 的角色不動
    """
    project = repository.get_project(project_id)
    access.check_project_update(caller, project)

    # 先驗證全部,再寫入
    leader_changed = 'leader_id' in patch and patch['leader_id'] != project.leader_id
    if leader_changed:
        _validate_leader(patch['leader_id'])
    leader_id = patch['leader_id'] if leader_changed else project.leader_id

    _validate_dates(
        patch.get('start_date', project.start_date),
        patch.get('end_date', project.end_date)
    )

    if patch.get('members') is not None:
        normalized = validate_members(
            patch['members'], leader_id,
            existing=project.members, actor_id=caller.user_id
        )
    else:
        normalized = None

    for field in ('title', 'description', 'start_date', 'end_date', 'status'):
        if field in patch:
            setattr(project, field, patch[field])
    project.leader_id = leader_id

    effects = []
    if normalized is not None:
        added = _apply_members(project, normalized)
        effects = _assignment_effects(project, added, caller)
    elif leader_changed:
        # 沒給新名單時其他成員不動,只把新 leader 設成 LEADER
        added = _promote_leader(project, leader_id, caller.user_id)
        effects = _assignment_effects(project, added, caller)

    db.session.flush()
    logger.info(f"Project {project.id} updated by user {caller.user_id}: {sorted(patch.keys())}")
    return project, effects


def delete_project(caller, project_id):
    project = repository.get_project(project_id)
    access.check_project_delete(caller, project)

    project.soft_delete(caller.user_id)
    db.session.flush()
    logger.info(f"Project {project.id} deleted by user {caller.user_id}")
    return project, []


def restore_project(caller, project_id):
    project = repository.get_project(project_id, include_deleted=True)
    if not project.is_deleted:
        raise NotFoundError('Deleted project not found.')
    access.check_project_restore(caller, project)

    project.restore()
    db.session.flush()
    logger.info(f"Project {project.id} restored by user {caller.user_id}")
    return project, []
