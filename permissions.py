"""
角色、權限 (capability) 和三種授權規則

提供:
- RoleName / Capability: 固定的 enum, 不接受自由字串
- ROLE_CAPABILITIES: 每個角色有哪些權限
- authorize(): 純函數, 不碰 DB
- admin_required / capability_required / owner_or_capability_required:
  route decorator (都已包含 jwt_required)
- role_and_scope_required: 先看角色權限, 再看是不是自己的資源 (或有 override)
"""
from dataclasses import dataclass, field
from enum import Enum
from functools import wraps

from flask import g
from flask_jwt_extended import jwt_required, current_user

from errors import Forbidden
from models import db, Role, UserRole


class RoleName(str, Enum):
    ADMIN = 'admin'
    PROJECT_MANAGER = 'responsable_proyecto'
    TASK_MANAGER = 'responsable_tarea'


class Capability(str, Enum):
    # Users
    USERS_READ = 'users:read'
    USERS_UPDATE = 'users:update'
    USERS_LIST_ALL = 'users:list_all'

    # Projects
    PROJECTS_CREATE = 'projects:create'
    PROJECTS_READ = 'projects:read'
    PROJECTS_UPDATE = 'projects:update'
    PROJECTS_DELETE = 'projects:delete'
    PROJECTS_LIST_ALL = 'projects:list_all'
    PROJECTS_ASSIGN_RESPONSIBLES = 'projects:assign_responsables'
    # 可以動任何專案, 不限自己負責的
    PROJECTS_MANAGE_ALL = 'projects:manage_all'

    # Tasks
    TASKS_CREATE = 'tasks:create'
    TASKS_READ = 'tasks:read'
    TASKS_UPDATE = 'tasks:update'
    TASKS_DELETE = 'tasks:delete'
    TASKS_LIST_ALL = 'tasks:list_all'
    TASKS_CHANGE_STATUS = 'tasks:change_status'
    TASKS_MANAGE_ALL = 'tasks:manage_all'

    # Roles
    ROLES_READ = 'roles:read'
    ROLES_ASSIGN = 'roles:assign'
    ROLES_REMOVE = 'roles:remove'

    # Activity log
    LOGS_READ = 'logs:read'


class Rule(Enum):
    ADMIN_ONLY = 'admin_only'
    ROLE_OR_ADMIN = 'role_or_admin'
    OWNER_OR_ROLE_OR_ADMIN = 'owner_or_role_or_admin'


ROLE_CAPABILITIES = {
    RoleName.ADMIN: frozenset(Capability),

    RoleName.PROJECT_MANAGER: frozenset({
        Capability.USERS_READ,
        Capability.PROJECTS_CREATE,
        Capability.PROJECTS_READ,
        Capability.PROJECTS_UPDATE,
        Capability.PROJECTS_ASSIGN_RESPONSIBLES,
        Capability.TASKS_CREATE,
        Capability.TASKS_READ,
        Capability.TASKS_UPDATE,
        Capability.TASKS_DELETE,
        Capability.TASKS_CHANGE_STATUS,
    }),

    RoleName.TASK_MANAGER: frozenset({
        Capability.PROJECTS_READ,
        Capability.TASKS_READ,
        Capability.TASKS_UPDATE,
        Capability.TASKS_CHANGE_STATUS,
    }),
}

ROLE_DESCRIPTIONS = {
    RoleName.ADMIN: 'Full access to users, roles, projects and tasks',
    RoleName.PROJECT_MANAGER: 'Creates projects and manages the tasks of the projects it is responsible for',
    RoleName.TASK_MANAGER: 'Works on the tasks assigned to it',
}


@dataclass(frozen=True)
class Principal:
    """授權檢查看到的目前使用者"""
    user_id: int
    is_admin: bool = False
    roles: frozenset = field(default_factory=frozenset)

    @property
    def is_superuser(self):
        return self.is_admin or RoleName.ADMIN in self.roles

    @property
    def capabilities(self):
        granted = set()
        for role in self.roles:
            granted |= ROLE_CAPABILITIES.get(role, frozenset())
        return frozenset(granted)

    def has_capability(self, capability):
        return self.is_superuser or capability in self.capabilities


def resolve_principal(user):
    """User -> (啟用中的) UserRole -> Role, 組成 Principal"""
    names = db.session.query(Role.name).join(
        UserRole, UserRole.role_id == Role.id
    ).filter(
        UserRole.user_id == user.id,
        UserRole.active.is_(True)
    ).all()

    roles = set()
    for (name,) in names:
        try:
            roles.add(RoleName(name))
        except ValueError:
            # 不在 enum 裡的角色不給任何權限
            continue

    return Principal(user_id=user.id, is_admin=bool(user.is_admin), roles=frozenset(roles))


def authorize(principal, rule, capability=None, is_owner=False):
    """判斷單一規則, 沒有 I/O, 只回 True / False"""
    if principal is None:
        return False

    if principal.is_superuser:
        return True

    if rule is Rule.ADMIN_ONLY:
        return False

    if rule is Rule.ROLE_OR_ADMIN:
        return capability is not None and capability in principal.capabilities

    if rule is Rule.OWNER_OR_ROLE_OR_ADMIN:
        if is_owner:
            return True
        return capability is not None and capability in principal.capabilities

    raise ValueError(f'Unknown authorization rule: {rule!r}')


def enforce(principal, rule, capability=None, is_owner=False):
    if not authorize(principal, rule, capability, is_owner):
        raise Forbidden()


# ============================================
# Request 輔助函數 & decorators
# ============================================

def get_principal():
    """目前 request 的 Principal (快取在 flask.g, 每個 request 算一次)"""
    principal = g.get('principal')
    if principal is None or principal.user_id != current_user.id:
        principal = resolve_principal(current_user)
        g.principal = principal
    return principal


def admin_required(fn):
    @wraps(fn)
    @jwt_required()
    def wrapper(*args, **kwargs):
        enforce(get_principal(), Rule.ADMIN_ONLY)
        return fn(*args, **kwargs)
    return wrapper


def capability_required(capability):
    def decorator(fn):
        @wraps(fn)
        @jwt_required()
        def wrapper(*args, **kwargs):
            enforce(get_principal(), Rule.ROLE_OR_ADMIN, capability)
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def role_and_scope_required(capability, override, ownership_lookup):
    """
    角色權限 + 資源範圍, 兩關都要過

    1. ROLE_OR_ADMIN: 角色必須給 capability (例如 tasks:update)
    2. OWNER_OR_ROLE_OR_ADMIN: 只能動自己負責的資源, 除非持有 override
       (例如 tasks:manage_all)

    對應 "responsable_tarea 有 tasks:update, 但只限指派給自己的任務"。
    """
    def decorator(fn):
        @wraps(fn)
        @jwt_required()
        def wrapper(*args, **kwargs):
            principal = get_principal()
            enforce(principal, Rule.ROLE_OR_ADMIN, capability)
            is_owner = ownership_lookup(principal, **kwargs)
            enforce(principal, Rule.OWNER_OR_ROLE_OR_ADMIN, override, is_owner)
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def owner_or_capability_required(capability, ownership_lookup):
    """
    管理員、持有 capability 或資源擁有者可以通過

    ownership_lookup(principal, **view_args): 是擁有者回 True,
    資源不存在時丟 NotFound (所以不存在會是 404 而不是 403)。
    """
    def decorator(fn):
        @wraps(fn)
        @jwt_required()
        def wrapper(*args, **kwargs):
            principal = get_principal()
            is_owner = ownership_lookup(principal, **kwargs)
            enforce(principal, Rule.OWNER_OR_ROLE_OR_ADMIN, capability, is_owner)
            return fn(*args, **kwargs)
        return wrapper
    return decorator
