from flask import Blueprint, jsonify
from marshmallow import Schema, fields, validate
from models import db, User, Role, UserRole, utcnow
from permissions import (
    RoleName, Capability, ROLE_DESCRIPTIONS, capability_required,
    owner_or_capability_required, get_principal
)
from activity import log_activity
from errors import NotFound, ValidationError, load_request_data
import logging

roles_bp = Blueprint('roles', __name__)
logger = logging.getLogger(__name__)


# ============================================
# Service 函數
# ============================================

def seed_roles():
    """補上缺少的固定角色, 回傳這次新增的名稱"""
    created = []
    for role_name in RoleName:
        if Role.query.filter_by(name=role_name.value).first() is None:
            db.session.add(Role(name=role_name.value, description=ROLE_DESCRIPTIONS[role_name]))
            created.append(role_name.value)
    db.session.commit()
    return created


def get_role(role_name):
    try:
        name = RoleName(role_name).value
    except ValueError:
        raise ValidationError(
            'Unknown role',
            errors={'role': [f"Must be one of: {', '.join(r.value for r in RoleName)}"]}
        )

    role = Role.query.filter_by(name=name).first()
    if role is None:
        raise NotFound(f'Role {name} has not been seeded')
    return role


def get_user_or_404(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFound('User not found')
    return user


def assign_role(user_id, role_name, assigned_by=None):
    """
    指派角色給使用者

    之前被撤銷過的指派會重新啟用, 不會多一筆。

    Returns:
        tuple: (UserRole, changed: bool)
    """
    user = get_user_or_404(user_id)
    role = get_role(role_name)

    assignment = UserRole.query.filter_by(user_id=user.id, role_id=role.id).first()

    if assignment and assignment.active:
        return assignment, False

    if assignment:
        assignment.active = True
        assignment.assigned_by = assigned_by
        assignment.assigned_at = utcnow()
    else:
        assignment = UserRole(
            user_id=user.id,
            role_id=role.id,
            active=True,
            assigned_by=assigned_by
        )
        db.session.add(assignment)

    log_activity(assigned_by, 'assign_role', 'user', user.id, details={'role': role.name})
    db.session.commit()

    logger.info(f"Role {role.name} assigned to user {user.id} by {assigned_by}")
    return assignment, True


def revoke_role(user_id, role_name, revoked_by=None):
    """
    撤銷角色 (soft delete, 只把 active 設成 False)

    Returns:
        bool: False when the user did not hold the role
    """
    user = get_user_or_404(user_id)
    role = get_role(role_name)

    assignment = UserRole.query.filter_by(user_id=user.id, role_id=role.id, active=True).first()
    if assignment is None:
        return False

    assignment.active = False
    log_activity(revoked_by, 'revoke_role', 'user', user.id, details={'role': role.name})
    db.session.commit()

    logger.info(f"Role {role.name} revoked from user {user.id} by {revoked_by}")
    return True


def get_user_role_names(user_id):
    return get_user_or_404(user_id).active_role_names()


def is_same_user(principal, user_id, **kwargs):
    get_user_or_404(user_id)
    return principal.user_id == user_id


# ============================================
# Routes
# ============================================

class AssignRoleSchema(Schema):
    role = fields.Str(
        required=True,
        validate=validate.OneOf([r.value for r in RoleName]),
        error_messages={'required': 'Role is required'}
    )


@roles_bp.route('/roles', methods=['GET'])
@capability_required(Capability.ROLES_READ)
def list_roles():
    roles = Role.query.order_by(Role.id).all()

    return jsonify({
        'success': True,
        'data': {'roles': [role.to_dict() for role in roles]}
    }), 200


@roles_bp.route('/users/<int:user_id>/roles', methods=['GET'])
@owner_or_capability_required(Capability.ROLES_READ, is_same_user)
def list_user_roles(user_id):
    assignments = UserRole.query.filter_by(user_id=user_id).all()

    return jsonify({
        'success': True,
        'data': {
            'user_id': user_id,
            'roles': get_user_role_names(user_id),
            'assignments': [assignment.to_dict() for assignment in assignments]
        }
    }), 200


@roles_bp.route('/users/<int:user_id>/roles', methods=['POST'])
@capability_required(Capability.ROLES_ASSIGN)
def add_user_role(user_id):
    result = load_request_data(AssignRoleSchema)

    assignment, changed = assign_role(user_id, result['role'], assigned_by=get_principal().user_id)

    return jsonify({
        'success': True,
        'message': 'Role assigned successfully' if changed else 'User already has this role',
        'data': {
            'user_id': user_id,
            'role': assignment.role.name,
            'roles': get_user_role_names(user_id)
        }
    }), 201 if changed else 200


@roles_bp.route('/users/<int:user_id>/roles/<role_name>', methods=['DELETE'])
@capability_required(Capability.ROLES_REMOVE)
def remove_user_role(user_id, role_name):
    removed = revoke_role(user_id, role_name, revoked_by=get_principal().user_id)

    return jsonify({
        'success': True,
        'message': 'Role removed successfully' if removed else 'User does not have this role',
        'data': {
            'user_id': user_id,
            'roles': get_user_role_names(user_id)
        }
    }), 200
