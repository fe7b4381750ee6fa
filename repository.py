"""
資料讀取的集中入口

每個 getter 都有 include_deleted 參數,預設排除軟刪除的資料,
找不到時丟 NotFoundError,讓 service 層不用自己到處判斷 is_deleted
"""
from sqlalchemy.orm import joinedload
from models import db, User, Project, ProjectMember, Task, Worklog, Notification, GlobalRole, TaskStatus, utcnow
from errors import NotFoundError


def _get(model, entity_id, include_deleted, message, options=None):
    query = model.query
    if options:
        query = query.options(*options)
    query = query.filter(model.id == entity_id)
    if not include_deleted:
        query = query.filter(model.is_deleted.is_(False))
    entity = query.first()
    if entity is None:
        raise NotFoundError(message)
    return entity

# ============================================
# User
# ============================================

def get_user(user_id, include_deleted=False):
    return _get(User, user_id, include_deleted, 'User not found.')


def find_user(user_id, include_deleted=False):
    """跟 get_user 一樣,但找不到時回傳 None"""
    if user_id is None:
        return None
    query = User.query.filter(User.id == user_id)
    if not include_deleted:
        query = query.filter(User.is_deleted.is_(False))
    return query.first()


def find_user_by_email(email, include_deleted=False):
    query = User.query.filter(db.func.lower(User.email) == email.strip().lower())
    if not include_deleted:
        query = query.filter(User.is_deleted.is_(False))
    return query.first()

# ============================================
# Project
# ============================================

def get_project(project_id, include_deleted=False):
    return _get(
        Project, project_id, include_deleted, 'Project not found.',
        options=[joinedload(Project.leader)]
    )


def visible_projects_query(caller):
    """使用者看得到的專案:admin 全部,其他人是自己帶領或參與的"""
    query = Project.query.filter(Project.is_deleted.is_(False))
    if caller.global_role == GlobalRole.ADMIN:
        return query
    member_project_ids = db.session.query(ProjectMember.project_id).filter(
        ProjectMember.user_id == caller.user_id
    )
    return query.filter(db.or_(
        Project.leader_id == caller.user_id,
        Project.id.in_(member_project_ids)
    ))

# ============================================
# Task
# ============================================

def get_task(task_id, include_deleted=False):
    """
    取得任務

    預設情況下,所屬專案被軟刪除的任務也視為不存在
    """
    task = _get(
        Task, task_id, include_deleted, 'Task not found.',
        options=[joinedload(Task.project), joinedload(Task.assignee)]
    )
    if not include_deleted and task.project.is_deleted:
        raise NotFoundError('Task not found.')
    return task


def find_task(task_id, include_deleted=True):
    query = Task.query.filter(Task.id == task_id)
    if not include_deleted:
        query = query.filter(Task.is_deleted.is_(False))
    return query.first()


def get_subtask(parent_id, subtask_id, include_deleted=False):
    subtask = get_task(subtask_id, include_deleted=include_deleted)
    if subtask.parent_task_id != parent_id:
        raise NotFoundError('Subtask not found.')
    return subtask


def count_live_subtasks(task_id):
    return Task.query.filter(
        Task.parent_task_id == task_id,
        Task.is_deleted.is_(False)
    ).count()


def list_subtasks(parent_id, include_deleted=False):
    query = Task.query.filter(Task.parent_task_id == parent_id)
    if not include_deleted:
        query = query.filter(Task.is_deleted.is_(False))
    return query.order_by(Task.id.asc()).all()

# ============================================
# Worklog
# ============================================

def get_worklog(worklog_id, include_deleted=False):
    return _get(
        Worklog, worklog_id, include_deleted, 'Worklog not found.',
        options=[joinedload(Worklog.task).joinedload(Task.project)]
    )


def sum_user_day_hours(user_id, day, exclude_worklog_id=None):
    """同一使用者同一天其他未刪除工時的總和"""
    query = db.session.query(db.func.coalesce(db.func.sum(Worklog.hours), 0.0)).filter(
        Worklog.user_id == user_id,
        Worklog.date == day,
        Worklog.is_deleted.is_(False)
    )
    if exclude_worklog_id is not None:
        query = query.filter(Worklog.id != exclude_worklog_id)
    return float(query.scalar() or 0.0)

# ============================================
# Notification
# ============================================

def get_notification(notification_id, user_id):
    notification = Notification.query.filter_by(
        id=notification_id,
        user_id=user_id,
        is_deleted=False
    ).first()
    if notification is None:
        raise NotFoundError('Notification not found.')
    return notification

# ============================================
# 統計
# ============================================

def task_stats(project_ids):
    """指定專案裡未刪除任務的狀態數量、工時與逾期數"""
    columns = [
        db.func.count(Task.id).label('total'),
        db.func.coalesce(db.func.sum(Task.estimated_hours), 0).label('estimated_hours'),
        db.func.coalesce(db.func.sum(Task.actual_hours), 0).label('actual_hours'),
        db.func.sum(db.case(
            (db.and_(Task.end_date < utcnow(), Task.status != TaskStatus.DONE), 1), else_=0
        )).label('overdue'),
    ]
    columns += [
        db.func.sum(db.case((Task.status == status, 1), else_=0)).label(status)
        for status in TaskStatus.ALL
    ]
    row = db.session.query(*columns) \
        .filter(Task.project_id.in_(project_ids), Task.is_deleted.is_(False)).first()

    total = row.total or 0
    done = getattr(row, TaskStatus.DONE) or 0
    return {
        'total': total,
        'byStatus': {status: getattr(row, status) or 0 for status in TaskStatus.ALL},
        'overdue': row.overdue or 0,
        'estimatedHours': round(float(row.estimated_hours or 0), 2),
        'actualHours': round(float(row.actual_hours or 0), 2),
        'completionRate': round(done / total * 100, 2) if total else 0,
    }
