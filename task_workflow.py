"""
任務的狀態機與階層規則

所有函數都回傳 (result, effects),由 blueprint 負責 commit 與送出 effects。
權限與驗證都在修改資料之前完成,失敗時不會留下任何部分寫入。
"""
from sqlalchemy import update, select
import logging

from models import db, Project, Task, GlobalRole, TaskStatus, TaskPriority, utcnow
from errors import ValidationError, NotFoundError, StateError
from effects import Effect
import access
import mailer
import repository

logger = logging.getLogger(__name__)

# ============================================
# 狀態機
# ============================================

TRANSITIONS = {
    TaskStatus.PENDING: frozenset({TaskStatus.OPEN, TaskStatus.PENDING}),
    TaskStatus.OPEN: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.OPEN}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.REVIEW, TaskStatus.IN_PROGRESS}),
    TaskStatus.REVIEW: frozenset({TaskStatus.DONE, TaskStatus.IN_PROGRESS, TaskStatus.REVIEW}),
    TaskStatus.DONE: frozenset({TaskStatus.DONE}),
}


def can_transition(old_status, new_status):
    if old_status == new_status:
        return True
    return new_status in TRANSITIONS.get(old_status, frozenset())


def check_transition(old_status, new_status):
    if not can_transition(old_status, new_status):
        raise StateError(f"Invalid transition from {old_status} to {new_status}.")


def apply_status(task, new_status, now=None):
    """
    套用狀態變更

    Returns:
        bool: 這次是否第一次進入 DONE
    """
    check_transition(task.status, new_status)
    entered_done = (
        new_status == TaskStatus.DONE
        and task.status != TaskStatus.DONE
        and task.completed_at is None
    )
    task.status = new_status
    if entered_done:
        task.completed_at = now or utcnow()
    return entered_done

# ============================================
# 輔助函數
# ============================================

def next_task_number(project):
    """
    產生任務編號: 專案標題前三碼 + 流水號

    流水號用單一 UPDATE 遞增,同一個專案同時建立任務也不會拿到重複的號碼
    """
    db.session.execute(
        update(Project)
        .where(Project.id == project.id)
        .values(task_counter=Project.task_counter + 1)
        .execution_options(synchronize_session=False)
    )
    sequence = db.session.execute(
        select(Project.task_counter).where(Project.id == project.id)
    ).scalar_one()
    prefix = project.title[:3].upper()
    return f"{prefix}-{sequence}"


def resolve_assignee(project, user_id):
    """被指派的人必須是有效的 team member,而且是專案成員"""
    user = repository.find_user(user_id)
    if not access.is_active(user) or user.global_role != GlobalRole.TEAM_MEMBER:
        raise ValidationError('Assigned user must be an active team member.')
    if not access.is_member(project, user.id):
        raise ValidationError('Assigned user is not a member of this project.')
    return user


def _assignment_effect(task, assignee, caller_name, actor_id):
    return Effect('task_assigned', assignee.id, {
        'taskId': task.id,
        'taskTitle': task.title,
        'taskNumber': task.task_number,
        'projectId': task.project_id,
        'assignedBy': caller_name,
        'actorId': actor_id,
        'link': mailer.frontend_link('tasks', task.id),
    })


def _completed_effect(task, caller_name, actor_id):
    return Effect('task_completed', task.project.leader_id, {
        'taskId': task.id,
        'taskTitle': task.title,
        'taskNumber': task.task_number,
        'projectId': task.project_id,
        'completedBy': caller_name,
        'actorId': actor_id,
    })


def _caller_name(caller):
    user = repository.find_user(caller.user_id)
    return user.full_name if user else 'Someone'

# ============================================
# 建立
# ============================================

def _create(caller, project, data, parent=None):
    assignee = None
    if data.get('assigned_to') is not None:
        assignee = resolve_assignee(project, data['assigned_to'])

    task = Task(
        task_number=next_task_number(project),
        title=data['title'],
        description=data.get('description'),
        project_id=project.id,
        parent_task_id=parent.id if parent else None,
        assigned_to=assignee.id if assignee else None,
        status=TaskStatus.PENDING,
        priority=data.get('priority') or TaskPriority.LOW,
        estimated_hours=data.get('estimated_hours'),
        actual_hours=0,
        start_date=data.get('start_date'),
        end_date=data.get('end_date'),
        created_by=caller.user_id,
    )
    db.session.add(task)
    db.session.flush()

    effects = []
    if assignee and assignee.id != caller.user_id:
        effects.append(_assignment_effect(task, assignee, _caller_name(caller), caller.user_id))

    logger.info(f"Task {task.task_number} created in project {project.id} by user {caller.user_id}")
    return task, effects


def create_task(caller, data):
    """
    建立任務

    Args:
        data: 已經過 schema 驗證的 dict,必須有 title 與 project_id
    """
    if not data.get('title') or not data.get('project_id'):
        raise ValidationError('Title and project ID are required.')

    project = repository.get_project(data['project_id'])
    access.check_task_create(caller, project)

    parent = None
    if data.get('parent_task_id') is not None:
        parent = Task.query.filter_by(
            id=data['parent_task_id'],
            project_id=project.id,
            is_deleted=False
        ).first()
        if parent is None:
            raise NotFoundError('Parent task not found.')

    return _create(caller, project, data, parent)


def create_subtask(caller, parent_id, data):
    """建立子任務,沒指定負責人時沿用父任務的負責人"""
    if not data.get('title'):
        raise ValidationError('Title is required.')

    parent = _get_parent(parent_id)
    access.check_task_create(caller, parent.project)

    data = dict(data)
    if 'assigned_to' not in data:
        data['assigned_to'] = parent.assigned_to
    return _create(caller, parent.project, data, parent)

# ============================================
# 更新
# ============================================

UPDATABLE_FIELDS = (
    'title', 'description', 'priority', 'estimated_hours',
    'actual_hours', 'start_date', 'end_date',
)


def _apply_update(caller, task, patch):
    access.check_task_update(caller, task, patch.keys())

    # 先做完所有檢查再改資料
    if 'status' in patch:
        check_transition(task.status, patch['status'])

    new_assignee = None
    if 'assigned_to' in patch and patch['assigned_to'] != task.assigned_to:
        if patch['assigned_to'] is not None:
            new_assignee = resolve_assignee(task.project, patch['assigned_to'])

    entered_done = False
    if 'status' in patch:
        entered_done = apply_status(task, patch['status'])

    if 'assigned_to' in patch:
        task.assigned_to = patch['assigned_to']

    for field in UPDATABLE_FIELDS:
        if field in patch:
            setattr(task, field, patch[field])

    db.session.flush()

    effects = []
    if new_assignee or entered_done:
        name = _caller_name(caller)
        if new_assignee and new_assignee.id != caller.user_id:
            effects.append(_assignment_effect(task, new_assignee, name, caller.user_id))
        if entered_done and task.project.leader_id != caller.user_id:
            effects.append(_completed_effect(task, name, caller.user_id))

    logger.info(f"Task {task.task_number} updated by user {caller.user_id}: {sorted(patch.keys())}")
    return task, effects


def update_task(caller, task_id, patch):
    task = repository.get_task(task_id)
    return _apply_update(caller, task, patch)


def update_subtask(caller, parent_id, subtask_id, patch):
    _get_parent(parent_id)
    subtask = repository.get_subtask(parent_id, subtask_id)
    return _apply_update(caller, subtask, patch)

# ============================================
# 刪除與還原
# ============================================

def _delete(caller, task):
    access.check_task_delete(caller, task)
    if repository.count_live_subtasks(task.id) > 0:
        raise StateError('Cannot delete task with subtasks.')

    task.soft_delete(caller.user_id)
    db.session.flush()
    logger.info(f"Task {task.task_number} deleted by user {caller.user_id}")
    return task, []


def _restore(caller, task):
    if not task.is_deleted:
        raise NotFoundError('Deleted task not found.')
    if task.project.is_deleted:
        raise NotFoundError('Project not found.')
    access.check_task_restore(caller, task)

    if task.parent_task_id is not None:
        parent = repository.find_task(task.parent_task_id)
        if parent is None or parent.is_deleted:
            raise StateError('Parent task is deleted or not found.')

    task.restore()
    db.session.flush()
    logger.info(f"Task {task.task_number} restored by user {caller.user_id}")
    return task, []


def delete_task(caller, task_id):
    return _delete(caller, repository.get_task(task_id))


def restore_task(caller, task_id):
    return _restore(caller, repository.get_task(task_id, include_deleted=True))


def delete_subtask(caller, parent_id, subtask_id):
    _get_parent(parent_id)
    return _delete(caller, repository.get_subtask(parent_id, subtask_id))


def restore_subtask(caller, parent_id, subtask_id):
    # 父任務本身被刪掉時要回 StateError,所以這裡也要查得到已刪除的父任務
    _get_parent(parent_id, include_deleted=True)
    subtask = repository.get_subtask(parent_id, subtask_id, include_deleted=True)
    return _restore(caller, subtask)


def _get_parent(parent_id, include_deleted=False):
    try:
        return repository.get_task(parent_id, include_deleted=include_deleted)
    except NotFoundError:
        raise NotFoundError('Parent task not found.')
