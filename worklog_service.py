"""
工時紀錄與加班計算

- 每筆未刪除的工時都會計入任務的 actual_hours,用增量更新
- is_overtime 在寫入時計算: 同一人同一天其他工時 + 這筆 > DAILY_HOURS_LIMIT
"""
from datetime import date as date_type
from flask import current_app
from sqlalchemy import update
import logging

from models import db, Task, Project, User, Worklog, GlobalRole
from errors import ValidationError, NotFoundError
import access
import repository

logger = logging.getLogger(__name__)

GROUP_BY_OPTIONS = ('user', 'task', 'project', 'date')

# ============================================
# 驗證與計算
# ============================================

def validate_hours(hours):
    low = current_app.config.get('WORKLOG_MIN_HOURS', 0.25)
    high = current_app.config.get('WORKLOG_MAX_HOURS', 24)
    if hours is None or hours < low or hours > high:
        raise ValidationError(f"Hours must be between {low:g} and {high:g}.")


def validate_log_date(log_date, today=None):
    today = today or date_type.today()
    if log_date > today:
        raise ValidationError('Date cannot be in the future.')


def is_overtime(other_hours, hours, limit=8.0):
    return other_hours + hours > limit


def compute_overtime(user_id, log_date, hours, exclude_worklog_id=None):
    other_hours = repository.sum_user_day_hours(user_id, log_date, exclude_worklog_id)
    limit = current_app.config.get('DAILY_HOURS_LIMIT', 8.0)
    return is_overtime(other_hours, hours, limit)


def adjust_task_hours(task_id, delta):
    """在同一個 transaction 裡用 SQL 遞增 actual_hours"""
    if not delta:
        return
    db.session.execute(
        update(Task)
        .where(Task.id == task_id)
        .values(actual_hours=Task.actual_hours + delta)
        .execution_options(synchronize_session='fetch')
    )

# ============================================
# CRUD
# ============================================

def create_worklog(caller, data):
    """
    新增工時

    Args:
        data: task_id, date, hours, description
    """
    if not data.get('task_id') or data.get('date') is None or data.get('hours') is None \
            or not data.get('description'):
        raise ValidationError('All fields are required.')
    validate_hours(data['hours'])
    validate_log_date(data['date'])

    task = repository.get_task(data['task_id'])
    access.check_worklog_write(caller, task)

    worklog = Worklog(
        task_id=task.id,
        user_id=caller.user_id,
        date=data['date'],
        hours=data['hours'],
        description=data['description'],
        is_overtime=compute_overtime(caller.user_id, data['date'], data['hours']),
    )
    db.session.add(worklog)
    db.session.flush()
    adjust_task_hours(task.id, worklog.hours)

    logger.info(
        f"Worklog {worklog.id} created by user {caller.user_id} on task {task.id}: "
        f"{worklog.hours}h on {worklog.date} (overtime={worklog.is_overtime})"
    )
    return worklog, []


def update_worklog(caller, worklog_id, patch):
    worklog = repository.get_worklog(worklog_id)
    access.check_worklog_update(caller, worklog)

    if 'date' in patch:
        validate_log_date(patch['date'])
    if 'hours' in patch:
        validate_hours(patch['hours'])

    original_hours = worklog.hours
    if 'date' in patch:
        worklog.date = patch['date']
    if 'hours' in patch:
        worklog.hours = patch['hours']
    if 'description' in patch:
        worklog.description = patch['description']

    if 'date' in patch or 'hours' in patch:
        worklog.is_overtime = compute_overtime(
            worklog.user_id, worklog.date, worklog.hours, exclude_worklog_id=worklog.id
        )

    db.session.flush()
    adjust_task_hours(worklog.task_id, worklog.hours - original_hours)

    logger.info(f"Worklog {worklog.id} updated by user {caller.user_id}: {sorted(patch.keys())}")
    return worklog, []


def delete_worklog(caller, worklog_id):
    worklog = repository.get_worklog(worklog_id)
    window = current_app.config.get('WORKLOG_DELETE_WINDOW_HOURS', 24)
    access.check_worklog_delete(caller, worklog, window_hours=window)

    worklog.soft_delete(caller.user_id)
    db.session.flush()
    adjust_task_hours(worklog.task_id, -worklog.hours)

    logger.info(f"Worklog {worklog.id} deleted by user {caller.user_id}")
    return worklog, []


def restore_worklog(caller, worklog_id):
    worklog = repository.get_worklog(worklog_id, include_deleted=True)
    if not worklog.is_deleted:
        raise NotFoundError('Deleted worklog not found.')
    access.check_worklog_restore(caller, worklog)

    worklog.restore()
    db.session.flush()
    adjust_task_hours(worklog.task_id, worklog.hours)

    logger.info(f"Worklog {worklog.id} restored by user {caller.user_id}")
    return worklog, []

# ============================================
# 查詢範圍
# ============================================

def scoped_worklog_query(caller):
    """
    依角色限制看得到的工時

    team member 只看自己的,project manager 看自己帶領的專案,admin 全部
    """
    query = Worklog.query.join(Task, Worklog.task_id == Task.id) \
        .join(Project, Task.project_id == Project.id) \
        .filter(Worklog.is_deleted.is_(False))

    if caller.global_role == GlobalRole.TEAM_MEMBER:
        query = query.filter(Worklog.user_id == caller.user_id)
    elif caller.global_role == GlobalRole.PROJECT_MANAGER:
        query = query.filter(Project.leader_id == caller.user_id)
    return query


def apply_filters(query, filters):
    if filters.get('task_id'):
        query = query.filter(Worklog.task_id == filters['task_id'])
    if filters.get('user_id'):
        query = query.filter(Worklog.user_id == filters['user_id'])
    if filters.get('project_id'):
        query = query.filter(Task.project_id == filters['project_id'])
    if filters.get('start_date'):
        query = query.filter(Worklog.date >= filters['start_date'])
    if filters.get('end_date'):
        query = query.filter(Worklog.date <= filters['end_date'])
    if filters.get('overtime_only'):
        query = query.filter(Worklog.is_overtime.is_(True))
    return query

# ============================================
# 統計報表
# ============================================

def _round(value):
    return round(float(value or 0), 2)


def get_worklog_summary(caller, filters, group_by='user'):
    """
    依 user / task / project / date 分組統計工時

    Returns:
        dict: summary (每組一列), overallStats, groupBy
    """
    if group_by not in GROUP_BY_OPTIONS:
        raise ValidationError(f"groupBy must be one of: {', '.join(GROUP_BY_OPTIONS)}.")

    if filters.get('project_id'):
        project = repository.get_project(filters['project_id'])
        access.check_project_read(caller, project)

    if group_by == 'task':
        keys = [Worklog.task_id, Task.title, Task.task_number, Project.title]
    elif group_by == 'project':
        keys = [Project.id, Project.title]
    elif group_by == 'date':
        keys = [Worklog.date]
    else:
        keys = [Worklog.user_id, User.fname, User.lname, User.email, User.global_role]

    total = db.func.sum(Worklog.hours)
    regular = db.func.sum(db.case((Worklog.is_overtime.is_(False), Worklog.hours), else_=0))
    overtime = db.func.sum(db.case((Worklog.is_overtime.is_(True), Worklog.hours), else_=0))

    query = apply_filters(scoped_worklog_query(caller), filters) \
        .join(User, Worklog.user_id == User.id) \
        .with_entities(
            *keys,
            total.label('total_hours'),
            regular.label('regular_hours'),
            overtime.label('overtime_hours'),
            db.func.count(Worklog.id).label('worklog_count'),
            db.func.avg(Worklog.hours).label('avg_hours'),
            db.func.min(Worklog.date).label('earliest_date'),
            db.func.max(Worklog.date).label('latest_date'),
        ) \
        .group_by(*keys) \
        .order_by(total.desc())

    summary = []
    for row in query.all():
        total_hours = _round(row.total_hours)
        overtime_hours = _round(row.overtime_hours)
        item = {
            'totalHours': total_hours,
            'regularHours': _round(row.regular_hours),
            'overtimeHours': overtime_hours,
            'worklogCount': row.worklog_count,
            'avgHoursPerLog': _round(row.avg_hours),
            'overtimePercentage': _round(overtime_hours / total_hours * 100) if total_hours else 0,
            'earliestDate': _iso(row.earliest_date),
            'latestDate': _iso(row.latest_date),
        }
        if group_by == 'task':
            item.update({
                'taskId': row[0],
                'taskTitle': row[1],
                'taskNumber': row[2],
                'projectTitle': row[3],
            })
        elif group_by == 'project':
            item.update({'projectId': row[0], 'projectTitle': row[1]})
        elif group_by == 'date':
            item['date'] = _iso(row[0])
        else:
            item.update({
                'userId': row[0],
                'userName': f"{row[1]} {row[2] or ''}".strip(),
                'userEmail': row[3],
                'userRole': row[4],
            })
        summary.append(item)

    overall = {
        'totalHours': _round(sum(item['totalHours'] for item in summary)),
        'totalRegularHours': _round(sum(item['regularHours'] for item in summary)),
        'totalOvertimeHours': _round(sum(item['overtimeHours'] for item in summary)),
        'totalWorklogs': sum(item['worklogCount'] for item in summary),
        'averageHoursPerWorklog': _round(
            sum(item['avgHoursPerLog'] for item in summary) / len(summary)
        ) if summary else 0,
    }

    return {
        'summary': summary,
        'overallStats': overall,
        'groupBy': group_by,
        'metadata': {
            'count': len(summary),
            'dateRange': {
                'start': _iso(filters.get('start_date')) or 'unbounded',
                'end': _iso(filters.get('end_date')) or 'unbounded',
            },
        },
    }


def _iso(value):
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.isoformat()
