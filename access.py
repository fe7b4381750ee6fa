"""
權限判斷

全部都是純函數:呼叫前先把 project / task / worklog 查好傳進來,
這裡只負責判斷,不碰資料庫。check_* 系列在不允許時丟 AuthorizationError,
一定要在任何寫入之前呼叫。
"""
from datetime import timedelta
import logging

from models import GlobalRole, utcnow
from errors import AuthorizationError

logger = logging.getLogger(__name__)

# 被指派的一般成員只能改這兩個欄位
ASSIGNEE_TASK_FIELDS = frozenset({'status', 'actual_hours'})


class Caller:
    """目前發出請求的使用者,明確傳進每個 service 函數"""

    __slots__ = ('user_id', 'global_role', 'is_active')

    def __init__(self, user_id, global_role, is_active=True):
        self.user_id = user_id
        self.global_role = global_role
        self.is_active = is_active

    @classmethod
    def from_user(cls, user):
        return cls(user.id, user.global_role, is_active(user))

    def __repr__(self):
        return f"<Caller {self.user_id} {self.global_role}>"

# ============================================
# 身分與角色
# ============================================

def is_admin(caller):
    return caller.is_active and caller.global_role == GlobalRole.ADMIN


def is_project_manager(caller):
    return caller.global_role == GlobalRole.PROJECT_MANAGER


def is_team_member(caller):
    return caller.global_role == GlobalRole.TEAM_MEMBER


def is_active(user):
    return user is not None and not user.is_deleted and bool(user.is_active)

# ============================================
# 專案成員
# ============================================

def is_leader(project, user_id):
    return project.leader_id == user_id


def is_member(project, user_id):
    return any(member.user_id == user_id for member in project.members)


def has_project_access(caller, project):
    """停用的 caller 一律沒有權限"""
    if not caller.is_active:
        return False
    return (
        is_admin(caller)
        or is_leader(project, caller.user_id)
        or is_member(project, caller.user_id)
    )


def can_manage_project(caller, project):
    return caller.is_active and (is_admin(caller) or is_leader(project, caller.user_id))


def _deny(caller, message, target=None):
    logger.warning(f"Access denied for user {caller.user_id} ({caller.global_role}) on {target}: {message}")
    raise AuthorizationError(message)

# ============================================
# 專案操作
# ============================================

def check_project_create(caller):
    if not is_admin(caller):
        _deny(caller, 'Only admin can create projects.', 'project')


def check_project_read(caller, project):
    if not has_project_access(caller, project):
        _deny(caller, 'Access denied to this project.', f"project {project.id}")


def check_project_update(caller, project):
    if not can_manage_project(caller, project):
        _deny(caller, 'Access denied to update this project.', f"project {project.id}")


def check_project_delete(caller, project):
    if not is_admin(caller):
        _deny(caller, 'Only admin can delete projects.', f"project {project.id}")


def check_project_restore(caller, project):
    if not is_admin(caller):
        _deny(caller, 'Only admin can restore projects.', f"project {project.id}")

# ============================================
# 任務操作
# ============================================

def check_task_read(caller, task):
    if not has_project_access(caller, task.project):
        _deny(caller, 'Access denied to this task.', f"task {task.id}")


def check_task_create(caller, project):
    if not can_manage_project(caller, project):
        _deny(caller, 'Access denied to create tasks in this project.', f"project {project.id}")


def check_task_update(caller, task, fields):
    """
    判斷能不能更新任務

    Args:
        fields: 這次請求帶的欄位名稱集合

    admin 與 leader 不受限制;被指派的人只能改 ASSIGNEE_TASK_FIELDS,
    只要多帶一個欄位整個請求就拒絕
    """
    if can_manage_project(caller, task.project):
        return
    if caller.is_active and task.assigned_to is not None and task.assigned_to == caller.user_id:
        if not set(fields) <= ASSIGNEE_TASK_FIELDS:
            _deny(caller, 'You can only update status and actual hours.', f"task {task.id}")
        return
    _deny(caller, 'Access denied to update this task.', f"task {task.id}")


def check_task_delete(caller, task):
    if not can_manage_project(caller, task.project):
        _deny(caller, 'Access denied to delete this task.', f"task {task.id}")


def check_task_restore(caller, task):
    if not can_manage_project(caller, task.project):
        _deny(caller, 'Access denied to restore this task.', f"task {task.id}")

# ============================================
# 工時操作
# ============================================

def check_worklog_write(caller, task):
    """建立工時:成員要是被指派者,PM 要是專案 leader,admin 都可以"""
    if not caller.is_active:
        _deny(caller, 'Access denied.', f"task {task.id}")
    if is_admin(caller):
        return
    if is_team_member(caller):
        if task.assigned_to != caller.user_id:
            _deny(caller, 'You are not assigned to this task.', f"task {task.id}")
        return
    if is_project_manager(caller):
        if not is_leader(task.project, caller.user_id):
            _deny(caller, "You don't manage this project.", f"task {task.id}")
        return
    _deny(caller, 'Access denied.', f"task {task.id}")


def check_worklog_read(caller, worklog):
    if (
        is_admin(caller)
        or (caller.is_active and worklog.user_id == caller.user_id)
        or can_manage_project(caller, worklog.task.project)
    ):
        return
    _deny(caller, 'Access denied.', f"worklog {worklog.id}")


def check_worklog_update(caller, worklog):
    check_worklog_read(caller, worklog)


def check_worklog_delete(caller, worklog, window_hours=24, now=None):
    """
    刪除工時

    只是擁有者 (不是 admin 也不是 leader) 的話,只能在建立後 window_hours 小時內刪除
    """
    check_worklog_read(caller, worklog)
    if is_admin(caller) or is_leader(worklog.task.project, caller.user_id):
        return
    now = now or utcnow()
    if worklog.created_at and now - worklog.created_at > timedelta(hours=window_hours):
        _deny(
            caller,
            f"Can only delete worklog within {window_hours} hours of creation.",
            f"worklog {worklog.id}"
        )


def check_worklog_restore(caller, worklog):
    check_worklog_read(caller, worklog)
