from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone

db = SQLAlchemy()


def utcnow():
    """naive UTC 時間 (所有 DateTime 欄位都存這種格式)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value):
    return value.isoformat() if value else None


# ============================================
# 1. User
# ============================================
class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    # 一律去空白 + 轉小寫後再存
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(20))
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_admin = db.Column(db.Boolean, nullable=False, default=False)
    last_login = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # 關聯
    role_assignments = db.relationship(
        'UserRole', foreign_keys='UserRole.user_id', backref='user',
        lazy=True, cascade='all,delete-orphan'
    )
    refresh_tokens = db.relationship(
        'RefreshToken', backref='user', lazy='dynamic', cascade='all,delete-orphan'
    )

    def active_role_names(self):
        return sorted(
            assignment.role.name
            for assignment in self.role_assignments
            if assignment.active
        )

    def to_dict(self, include_roles=True):
        """對外的資料格式 (絕對不含密碼 hash)"""
        data = {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'is_active': self.is_active,
            'is_admin': self.is_admin,
            'last_login': isoformat(self.last_login),
            'created_at': isoformat(self.created_at),
        }
        if include_roles:
            data['roles'] = self.active_role_names()
        return data

    def __repr__(self):
        return f'<User {self.id} {self.email}>'


# ============================================
# 2. Role / UserRole
# ============================================
class Role(db.Model):
    __tablename__ = 'roles'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)
    description = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description
        }


class UserRole(db.Model):
    __tablename__ = 'user_roles'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    role_id = db.Column(db.Integer, db.ForeignKey('roles.id'), nullable=False)
    # soft delete: 重新指派時改回 True, 不會新增一筆
    active = db.Column(db.Boolean, nullable=False, default=True)
    assigned_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    assigned_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    role = db.relationship('Role', lazy='joined')

    __table_args__ = (
        db.UniqueConstraint('user_id', 'role_id', name='unique_user_role'),
        db.Index('idx_user_roles_user_active', 'user_id', 'active'),
    )

    def to_dict(self):
        return {
            'role': self.role.name,
            'active': self.active,
            'assigned_by': self.assigned_by,
            'assigned_at': isoformat(self.assigned_at)
        }


# ============================================
# 3. Session tokens (refresh token / 黑名單)
# ============================================
class RefreshToken(db.Model):
    __tablename__ = 'refresh_tokens'

    id = db.Column(db.Integer, primary_key=True)
    token = db.Column(db.String(128), unique=True, nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    revoked = db.Column(db.Boolean, nullable=False, default=False)
    revoked_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (
        db.Index('idx_refresh_tokens_user', 'user_id'),
        db.Index('idx_refresh_tokens_expires', 'expires_at'),
    )

    def is_usable(self, now=None):
        now = now or utcnow()
        return not self.revoked and self.expires_at > now


class TokenBlacklist(db.Model):
    __tablename__ = 'token_blacklist'

    id = db.Column(db.Integer, primary_key=True)
    jti = db.Column(db.String(255), unique=True, nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    # access token 原本的到期時間, 過了之後這筆就沒用了
    expires_at = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (
        db.Index('idx_blacklist_expires', 'expires_at'),
    )


# ============================================
# 4. Project / ProjectResponsible
# ============================================
class Project(db.Model):
    __tablename__ = 'projects'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default='planning')  # planning, in_progress, completed, cancelled
    start_date = db.Column(db.DateTime)
    end_date = db.Column(db.DateTime)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # 關聯 (刪專案時任務和負責人一起刪)
    creator = db.relationship('User', foreign_keys=[created_by])
    tasks = db.relationship('Task', backref='project', lazy=True, cascade='all,delete-orphan')
    responsibles = db.relationship(
        'ProjectResponsible', backref='project', lazy=True, cascade='all,delete-orphan'
    )

    __table_args__ = (
        db.Index('idx_project_status', 'status'),
        db.Index('idx_project_created_by', 'created_by'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'status': self.status,
            'start_date': isoformat(self.start_date),
            'end_date': isoformat(self.end_date),
            'created_by': {
                'id': self.creator.id,
                'name': self.creator.name
            } if self.creator else None,
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at)
        }


class ProjectResponsible(db.Model):
    __tablename__ = 'project_responsibles'

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    active = db.Column(db.Boolean, nullable=False, default=True)
    assigned_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    assigned_at = db.Column(db.DateTime, default=utcnow)

    user = db.relationship('User', foreign_keys=[user_id])

    __table_args__ = (
        db.UniqueConstraint('project_id', 'user_id', name='unique_project_responsible'),
    )

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'name': self.user.name,
            'email': self.user.email,
            'active': self.active,
            'assigned_by': self.assigned_by,
            'assigned_at': isoformat(self.assigned_at)
        }


# ============================================
# 5. Task
# ============================================
class Task(db.Model):
    __tablename__ = 'tasks'

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default='pending')  # pending, in_progress, completed, cancelled
    priority = db.Column(db.String(20), nullable=False, default='medium')  # low, medium, high, urgent

    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=False)
    assigned_to = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)

    due_date = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    assignee = db.relationship('User', foreign_keys=[assigned_to])
    creator = db.relationship('User', foreign_keys=[created_by])

    __table_args__ = (
        db.Index('idx_task_project_status', 'project_id', 'status'),
        db.Index('idx_task_assigned_status', 'assigned_to', 'status'),
        db.Index('idx_task_due_date', 'due_date'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'status': self.status,
            'priority': self.priority,
            'project_id': self.project_id,
            'assigned_to': {
                'id': self.assignee.id,
                'name': self.assignee.name
            } if self.assignee else None,
            'created_by': {
                'id': self.creator.id,
                'name': self.creator.name
            } if self.creator else None,
            'due_date': isoformat(self.due_date),
            'completed_at': isoformat(self.completed_at),
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at)
        }


# ============================================
# 6. ActivityLog
# ============================================
class ActivityLog(db.Model):
    __tablename__ = 'activity_logs'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    action = db.Column(db.String(100), nullable=False)
    resource_type = db.Column(db.String(50))
    resource_id = db.Column(db.Integer)
    project_id = db.Column(db.Integer, nullable=True)
    details = db.Column(db.JSON)
    ip_address = db.Column(db.String(45))
    created_at = db.Column(db.DateTime, default=utcnow)

    user = db.relationship('User', foreign_keys=[user_id])

    __table_args__ = (
        db.Index('idx_activity_user', 'user_id'),
        db.Index('idx_activity_project', 'project_id'),
        db.Index('idx_activity_created_at', 'created_at'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'user': {
                'id': self.user.id,
                'name': self.user.name
            } if self.user else None,
            'action': self.action,
            'resource_type': self.resource_type,
            'resource_id': self.resource_id,
            'project_id': self.project_id,
            'details': self.details,
            'created_at': isoformat(self.created_at)
        }


# ============================================
# 7. UserSettings
# ============================================
class UserSettings(db.Model):
    """
    使用者偏好設定 (一人一筆)

    settings 只存使用者改過的部分, 讀取時再和預設值合併;
    沒有這筆資料就等於全部用預設值。
    """
    __tablename__ = 'user_settings'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, unique=True)
    settings = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # 關聯: 刪除使用者時一起刪
    user = db.relationship(
        'User',
        backref=db.backref('settings_record', uselist=False, cascade='all,delete-orphan')
    )
