from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required, current_user
from marshmallow import Schema, fields, validate, EXCLUDE
from sqlalchemy import func, or_
from models import (
    db, User, UserRole, UserSettings, RefreshToken, TokenBlacklist,
    Project, ProjectResponsible, Task, ActivityLog
)
from permissions import (
    RoleName, Capability, admin_required, capability_required,
    owner_or_capability_required, get_principal
)
from roles import get_user_or_404, is_same_user, assign_role
from activity import log_activity
from extensions import get_auth_service, get_token_service
from errors import Conflict, ValidationError, load_request_data
import copy
import logging

users_bp = Blueprint('users', __name__)
logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
    'theme': 'light',
    'language': 'es',
    'notifications': {
        'email': True,
        'push': True,
        'task_reminders': True,
        'project_updates': True,
    },
    'dashboard': {
        'show_completed_tasks': False,
        'tasks_per_page': 10,
        'default_view': 'list',
    },
    'privacy': {
        'profile_visible': True,
        'show_email': False,
        'show_phone': False,
    },
}


# ============================================
# Input Validation Schemas
# ============================================

class UpdateUserSchema(Schema):
    """更新使用者驗證"""
    name = fields.Str(validate=validate.Length(min=2, max=100))
    phone = fields.Str(validate=validate.Length(max=20), allow_none=True)


class UserStatusSchema(Schema):
    is_active = fields.Bool(required=True, error_messages={'required': 'is_active is required'})


class CreateUserOptionsSchema(Schema):
    """
    管理員建帳號時的額外選項

    帳號本身 (name/email/password/phone) 交給 RegisterSchema 驗證,
    這裡只看 is_admin 和 roles, 其他欄位忽略。
    """

    class Meta:
        unknown = EXCLUDE

    is_admin = fields.Bool(load_default=False)
    roles = fields.List(
        fields.Str(validate=validate.OneOf([r.value for r in RoleName])),
        load_default=list
    )


class StrictBool(fields.Boolean):
    """只收 JSON true/false, 不接受 "true" 或 1"""

    def _deserialize(self, value, attr, data, **kwargs):
        if not isinstance(value, bool):
            raise self.make_error('invalid', input=value)
        return value


class NotificationSettingsSchema(Schema):
    email = StrictBool()
    push = StrictBool()
    task_reminders = StrictBool()
    project_updates = StrictBool()


class DashboardSettingsSchema(Schema):
    show_completed_tasks = StrictBool()
    tasks_per_page = fields.Int(strict=True, validate=validate.Range(min=5, max=100))
    default_view = fields.Str(validate=validate.OneOf(['list', 'grid', 'kanban']))


class PrivacySettingsSchema(Schema):
    profile_visible = StrictBool()
    show_email = StrictBool()
    show_phone = StrictBool()


class UserSettingsSchema(Schema):
    """
    設定更新驗證

    每個欄位都可省略 (只改有送的部分); 不認得的 key 一律 400,
    巢狀區塊也一樣。
    """
    theme = fields.Str(validate=validate.OneOf(['light', 'dark']))
    language = fields.Str(validate=validate.OneOf(['es', 'en']))
    notifications = fields.Nested(NotificationSettingsSchema)
    dashboard = fields.Nested(DashboardSettingsSchema)
    privacy = fields.Nested(PrivacySettingsSchema)


# ============================================
# 設定 (Settings) 輔助函數
# ============================================

def merge_settings(base, changes):
    """巢狀合併, 回傳新的 dict (不改動 base)"""
    merged = copy.deepcopy(base)
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_settings(merged[key], value)
        else:
            merged[key] = value
    return merged


def get_user_settings(user_id):
    """預設值 + 使用者存過的部分"""
    record = UserSettings.query.filter_by(user_id=user_id).first()
    stored = record.settings if record and record.settings else {}
    return merge_settings(DEFAULT_SETTINGS, stored)


def update_user_settings(user_id, changes):
    record = UserSettings.query.filter_by(user_id=user_id).first()
    if record is None:
        record = UserSettings(user_id=user_id, settings={})
        db.session.add(record)

    # 指派新的 dict, JSON 欄位才會被標記為已修改
    record.settings = merge_settings(record.settings or {}, changes)
    log_activity(user_id, 'update_settings', 'user', user_id, details={'changes': changes})
    db.session.commit()

    return merge_settings(DEFAULT_SETTINGS, record.settings)


def reset_user_settings(user_id):
    UserSettings.query.filter_by(user_id=user_id).delete(synchronize_session=False)
    log_activity(user_id, 'reset_settings', 'user', user_id)
    db.session.commit()
    return copy.deepcopy(DEFAULT_SETTINGS)


# ============================================
# Routes
# ============================================

@users_bp.route('', methods=['GET'])
@capability_required(Capability.USERS_READ)
def list_users():
    """
    使用者列表 (分頁)

    Query params: page, per_page, is_active (true/false), search (name 或 email)
    """
    page = request.args.get('page', 1, type=int)
    per_page = request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int)
    per_page = max(1, min(per_page, current_app.config['MAX_PAGE_SIZE']))

    query = User.query

    # 沒有 users:list_all (例如 responsable_proyecto 找人指派任務) 只看得到啟用中的帳號
    if not get_principal().has_capability(Capability.USERS_LIST_ALL):
        query = query.filter(User.is_active.is_(True))

    is_active = request.args.get('is_active')
    if is_active is not None:
        query = query.filter(User.is_active.is_(is_active.lower() == 'true'))

    search = request.args.get('search', '').strip()
    if search:
        pattern = f'%{search.lower()}%'
        query = query.filter(or_(
            func.lower(User.name).like(pattern),
            User.email.like(pattern)
        ))

    result = query.order_by(User.id).paginate(page=page, per_page=per_page, error_out=False)

    return jsonify({
        'success': True,
        'data': {
            'users': [user.to_dict() for user in result.items],
            'pagination': {
                'page': page,
                'per_page': per_page,
                'total': result.total,
                'total_pages': result.pages
            }
        }
    }), 200


@users_bp.route('', methods=['POST'])
@admin_required
def create_user():
    """
    管理員建立帳號

    改進點:
    1. 和 /auth/register 走同一套驗證 (email 正規化, 密碼規則)
    2. 可以直接指定 is_admin 和初始角色
    3. 選項先驗證, 角色名稱錯誤時不會留下半套帳號
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')

    options = load_request_data(CreateUserOptionsSchema, data)
    principal = get_principal()

    user = get_auth_service().create_user(data, is_admin=options['is_admin'], actor_id=principal.user_id)
    for role_name in options['roles']:
        assign_role(user.id, role_name, assigned_by=principal.user_id)

    return jsonify({
        'success': True,
        'message': 'User created successfully',
        'data': {'user': user.to_dict()}
    }), 201


@users_bp.route('/stats', methods=['GET'])
@admin_required
def user_stats():
    return jsonify({
        'success': True,
        'data': {'stats': get_user_statistics()}
    }), 200


def get_user_statistics():
    total = User.query.count()
    active = User.query.filter(User.is_active.is_(True)).count()
    admins = User.query.filter(User.is_admin.is_(True)).count()
    return {
        'total': total,
        'active': active,
        'inactive': total - active,
        'admins': admins
    }


# ============================================
# Settings (目前登入的使用者)
# ============================================

@users_bp.route('/settings', methods=['GET'])
@jwt_required()
def get_settings():
    return jsonify({
        'success': True,
        'data': {'settings': get_user_settings(current_user.id)}
    }), 200


@users_bp.route('/settings', methods=['PUT'])
@jwt_required()
def update_settings():
    """
    更新偏好設定

    只需送要改的欄位, 巢狀區塊 (notifications / dashboard / privacy)
    也是逐欄合併, 沒送的欄位保持原值。
    """
    changes = load_request_data(UserSettingsSchema)
    settings = update_user_settings(current_user.id, changes)

    logger.info(f"Settings updated for user {current_user.id}")

    return jsonify({
        'success': True,
        'message': 'Settings updated successfully',
        'data': {'settings': settings}
    }), 200


@users_bp.route('/settings/reset', methods=['POST'])
@jwt_required()
def reset_settings():
    """刪掉存過的設定, 回到預設值"""
    settings = reset_user_settings(current_user.id)

    return jsonify({
        'success': True,
        'message': 'Settings reset to defaults',
        'data': {'settings': settings}
    }), 200


# ============================================
# Single user
# ============================================

@users_bp.route('/<int:user_id>', methods=['GET'])
@owner_or_capability_required(Capability.USERS_READ, is_same_user)
def get_user(user_id):
    user = get_user_or_404(user_id)

    return jsonify({
        'success': True,
        'data': {'user': user.to_dict()}
    }), 200


@users_bp.route('/<int:user_id>', methods=['PATCH'])
@owner_or_capability_required(Capability.USERS_UPDATE, is_same_user)
def update_user(user_id):
    user = get_user_or_404(user_id)
    result = load_request_data(UpdateUserSchema)

    changes = {}
    for field in ['name', 'phone']:
        if field in result and getattr(user, field) != result[field]:
            changes[field] = {'old': getattr(user, field), 'new': result[field]}
            setattr(user, field, result[field])

    if not changes:
        return jsonify({
            'success': True,
            'message': 'No changes to update',
            'data': {'user': user.to_dict()}
        }), 200

    log_activity(get_principal().user_id, 'update_user', 'user', user.id, details={'changes': changes})
    db.session.commit()

    logger.info(f"User {user.id} updated by {get_principal().user_id}")

    return jsonify({
        'success': True,
        'message': 'User updated successfully',
        'data': {'user': user.to_dict()}
    }), 200


@users_bp.route('/<int:user_id>', methods=['DELETE'])
@admin_required
def delete_user(user_id):
    """
    刪除帳號 (僅限管理員)

    建立過專案或任務的帳號不能刪 (那些資料需要 created_by),
    請改用停用。其餘關聯處理:
    - 指派給他的任務 → 改成未指派
    - 專案負責人資格 → 刪除
    - activity log / 黑名單 / assigned_by → 保留, user 欄位設為 NULL
    - 角色、refresh token、偏好設定 → 跟著刪除
    """
    user = get_user_or_404(user_id)
    principal = get_principal()

    if user.id == principal.user_id:
        raise Conflict('You cannot delete your own account')

    created_something = (
        Project.query.filter_by(created_by=user.id).first() is not None
        or Task.query.filter_by(created_by=user.id).first() is not None
    )
    if created_something:
        raise Conflict('User has created projects or tasks; deactivate the account instead')

    Task.query.filter_by(assigned_to=user.id).update({'assigned_to': None}, synchronize_session=False)
    ProjectResponsible.query.filter_by(user_id=user.id).delete(synchronize_session=False)
    ProjectResponsible.query.filter_by(assigned_by=user.id).update({'assigned_by': None}, synchronize_session=False)
    UserRole.query.filter_by(assigned_by=user.id).update({'assigned_by': None}, synchronize_session=False)
    ActivityLog.query.filter_by(user_id=user.id).update({'user_id': None}, synchronize_session=False)
    TokenBlacklist.query.filter_by(user_id=user.id).update({'user_id': None}, synchronize_session=False)
    RefreshToken.query.filter_by(user_id=user.id).delete(synchronize_session=False)

    log_activity(principal.user_id, 'delete_user', 'user', user.id, details={'email': user.email})
    db.session.delete(user)

    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.error(f"Deleting user {user_id} failed", exc_info=True)
        raise

    logger.info(f"User {user_id} deleted by {principal.user_id}")

    return jsonify({
        'success': True,
        'message': 'User deleted successfully'
    }), 200


@users_bp.route('/<int:user_id>/status', methods=['PATCH'])
@admin_required
def set_user_status(user_id):
    """
    啟用 / 停用帳號

    停用時一併撤銷所有 refresh token; access token 在下一個 request
    就會失效, 因為 user lookup 不接受停用的帳號。
    """
    user = get_user_or_404(user_id)
    result = load_request_data(UserStatusSchema)
    principal = get_principal()

    if user.id == principal.user_id and not result['is_active']:
        raise Conflict('You cannot deactivate your own account')

    if user.is_active == result['is_active']:
        return jsonify({
            'success': True,
            'message': 'Status unchanged',
            'data': {'user': user.to_dict()}
        }), 200

    user.is_active = result['is_active']
    log_activity(
        principal.user_id,
        'activate_user' if user.is_active else 'deactivate_user',
        'user', user.id
    )
    db.session.commit()

    if not user.is_active:
        get_token_service().revoke_all_for_user(user.id)

    logger.info(f"User {user.id} set to {'active' if user.is_active else 'inactive'} by {principal.user_id}")

    return jsonify({
        'success': True,
        'message': 'User status updated',
        'data': {'user': user.to_dict()}
    }), 200
