from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone

db = SQLAlchemy()


def utcnow():
    """資料庫統一存 naive UTC 時間"""
    return datetime.now(timezone.utc).replace(tzinfo=None)

# ============================================
# 列舉值 (字串常數)
# ============================================

class GlobalRole:
    ADMIN = 'admin'
    PROJECT_MANAGER = 'project_manager'
    TEAM_MEMBER = 'team_member'

    ALL = (ADMIN, PROJECT_MANAGER, TEAM_MEMBER)


class ProjectRole:
    LEADER = 'leader'
    FRONTEND_DEVELOPER = 'frontend_developer'
    BACKEND_DEVELOPER = 'backend_developer'
    FULL_STACK_DEVELOPER = 'fullstack_developer'
    UI_UX_DEVELOPER = 'ui_ux_developer'
    QA_ENGINEER = 'qa_engineer'
    DEVOPS_ENGINEER = 'devops_engineer'

    # 沒指定角色的成員
    DEFAULT = 'team_member'


class ProjectStatus:
    PLANNING = 'planning'
    ACTIVE = 'active'
    ON_HOLD = 'on_hold'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'

    ALL = (PLANNING, ACTIVE, ON_HOLD, COMPLETED, CANCELLED)


class TaskStatus:
    PENDING = 'pending'
    OPEN = 'open'
    IN_PROGRESS = 'in_progress'
    REVIEW = 'review'
    DONE = 'done'

    ALL = (PENDING, OPEN, IN_PROGRESS, REVIEW, DONE)


class TaskPriority:
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'
    CRITICAL = 'critical'

    ALL = (LOW, MEDIUM, HIGH, CRITICAL)


class OtpPurpose:
    PASSWORD_RESET = 'PASSWORD_RESET'
    EMAIL_VERIFICATION = 'EMAIL_VERIFICATION'
    PHONE_VERIFICATION = 'PHONE_VERIFICATION'

    ALL = (PASSWORD_RESET, EMAIL_VERIFICATION, PHONE_VERIFICATION)

# ============================================
# 軟刪除欄位
# ============================================

class SoftDeleteMixin:
    is_deleted = db.Column(db.Boolean, default=False, nullable=False, index=True)
    deleted_at = db.Column(db.DateTime)
    deleted_by = db.Column(db.Integer)

    def soft_delete(self, actor_id):
        self.is_deleted = True
        self.deleted_at = utcnow()
        self.deleted_by = actor_id

    def restore(self):
        self.is_deleted = False
        self.deleted_at = None
        self.deleted_by = None

# ============================================
# 1. User 模型
# ============================================
class User(SoftDeleteMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    fname = db.Column(db.String(100), nullable=False)
    lname = db.Column(db.String(100))
    avatar_url = db.Column(db.String(500))

    # 每個使用者只有一個全域角色
    global_role = db.Column(db.String(20), nullable=False, default=GlobalRole.TEAM_MEMBER)

    # 專案指派快取,真正的成員資料以 ProjectMember 為準
    project_assignments = db.Column(db.JSON, default=list)

    is_active = db.Column(db.Boolean, default=True, nullable=False)

    # 暫時密碼流程
    is_temp_password_active = db.Column(db.Boolean, default=False, nullable=False)
    last_password_change = db.Column(db.DateTime)

    last_active = db.Column(db.DateTime)
    created_by = db.Column(db.Integer)
    updated_by = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # 關聯
    otp_requests = db.relationship('OtpRequest', backref='user', lazy=True,
                                   cascade='all,delete-orphan', order_by='OtpRequest.id')
    notifications = db.relationship('Notification', foreign_keys='Notification.user_id',
                                    backref='user', lazy=True, cascade='all,delete-orphan')

    @property
    def full_name(self):
        return f"{self.fname} {self.lname}" if self.lname else self.fname

# ============================================
# 2. OtpRequest 模型 (一次性驗證碼)
# ============================================
class OtpRequest(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    code_hash = db.Column(db.String(255), nullable=False)
    purpose = db.Column(db.String(30), nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    used = db.Column(db.Boolean, default=False, nullable=False)
    used_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)

# ============================================
# 3. Project 模型
# ============================================
class Project(SoftDeleteMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=ProjectStatus.PLANNING)
    leader_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=False)

    # 任務編號計數器,用 UPDATE ... + 1 遞增
    task_counter = db.Column(db.Integer, nullable=False, default=0)

    created_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # 關聯
    leader = db.relationship('User', foreign_keys=[leader_id])
    members = db.relationship('ProjectMember', backref='project', lazy='selectin',
                              cascade='all,delete-orphan', order_by='ProjectMember.id')
    tasks = db.relationship('Task', backref='project', lazy=True)

    # 索引
    __table_args__ = (
        db.Index('idx_project_status', 'status'),
        db.Index('idx_project_leader', 'leader_id'),
    )

# ============================================
# 4. ProjectMember 模型
# ============================================
class ProjectMember(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    project_role = db.Column(db.String(50), nullable=False, default=ProjectRole.DEFAULT)
    assigned_at = db.Column(db.DateTime, default=utcnow)
    assigned_by = db.Column(db.Integer, db.ForeignKey('user.id'))

    # 關聯
    user = db.relationship('User', foreign_keys=[user_id])

    # 同一個專案不能重複加入同一個人
    __table_args__ = (
        db.UniqueConstraint('project_id', 'user_id', name='unique_project_member'),
    )

# ============================================
# 5. Task 模型
# ============================================
class Task(SoftDeleteMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    task_number = db.Column(db.String(50), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default=TaskStatus.PENDING)
    priority = db.Column(db.String(20), nullable=False, default=TaskPriority.LOW)

    # 工時
    estimated_hours = db.Column(db.Float)
    actual_hours = db.Column(db.Float, nullable=False, default=0)

    # 關聯欄位
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    parent_task_id = db.Column(db.Integer, db.ForeignKey('task.id'), nullable=True)
    assigned_to = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)

    # 時間欄位
    start_date = db.Column(db.DateTime)
    end_date = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # 關聯
    assignee = db.relationship('User', foreign_keys=[assigned_to])
    creator = db.relationship('User', foreign_keys=[created_by])
    parent = db.relationship('Task', remote_side=[id], backref='subtasks')

    # 索引
    __table_args__ = (
        db.Index('idx_task_project_status', 'project_id', 'status'),
        db.Index('idx_task_project_assignee', 'project_id', 'assigned_to'),
        db.Index('idx_task_parent_deleted', 'parent_task_id', 'is_deleted'),
        db.UniqueConstraint('project_id', 'task_number', name='unique_project_task_number'),
    )

# ============================================
# 6. Worklog 模型
# ============================================
class Worklog(SoftDeleteMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, db.ForeignKey('task.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)

    # 日曆日,不含時間
    date = db.Column(db.Date, nullable=False)
    hours = db.Column(db.Float, nullable=False)
    description = db.Column(db.String(500), nullable=False)

    # 寫入時計算,不會事後重算
    is_overtime = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # 關聯
    task = db.relationship('Task', backref=db.backref('worklogs', lazy=True))
    user = db.relationship('User', foreign_keys=[user_id])

    # 索引
    __table_args__ = (
        db.Index('idx_worklog_task_date', 'task_id', 'date'),
        db.Index('idx_worklog_user_date', 'user_id', 'date'),
    )

# ============================================
# 7. Notification 模型
# ============================================
class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    type = db.Column(db.String(50), nullable=False)  # task_assigned, project_assigned, etc
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    is_read = db.Column(db.Boolean, default=False, nullable=False)
    read_at = db.Column(db.DateTime)
    related_type = db.Column(db.String(20))  # task, project, worklog, user
    related_id = db.Column(db.Integer)
    details = db.Column(db.JSON)
    created_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    is_deleted = db.Column(db.Boolean, default=False, nullable=False)
    deleted_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (
        db.Index('idx_notification_user_read', 'user_id', 'is_read'),
    )
