from flask import Blueprint, request, jsonify, current_app
from marshmallow import Schema, fields, validate, validates_schema
from marshmallow import ValidationError as SchemaValidationError
from sqlalchemy import func, case, or_
from sqlalchemy.exc import IntegrityError
from models import db, Project, ProjectResponsible, Task, ActivityLog, utcnow
from permissions import (
    Capability, capability_required, owner_or_capability_required,
    role_and_scope_required, get_principal
)
from activity import log_activity, paginate_activity
from roles import get_user_or_404
from errors import NotFound, Conflict, ValidationError, load_request_data
from flask_jwt_extended import jwt_required
from datetime import timezone
import logging

projects_bp = Blueprint('projects', __name__)
logger = logging.getLogger(__name__)

PROJECT_STATUSES = ['planning', 'in_progress', 'completed', 'cancelled']

PROJECT_TRANSITIONS = {
    'planning': ['in_progress', 'cancelled'],
    'in_progress': ['completed', 'cancelled'],
    'completed': [],
    'cancelled': ['planning'],
}


# ============================================
# Input Validation Schemas
# ============================================

class CreateProjectSchema(Schema):
    """建立專案驗證"""
    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Project name is required'}
    )
    description = fields.Str(validate=validate.Length(max=2000), allow_none=True)
    start_date = fields.NaiveDateTime(timezone=timezone.utc, allow_none=True)
    end_date = fields.NaiveDateTime(timezone=timezone.utc, allow_none=True)

    @validates_schema
    def check_dates(self, data, **kwargs):
        start, end = data.get('start_date'), data.get('end_date')
        if start and end and end < start:
            raise SchemaValidationError('End date must not be before start date', 'end_date')


class UpdateProjectSchema(CreateProjectSchema):
    """更新專案驗證 (欄位都可省略)"""
    name = fields.Str(validate=validate.Length(min=1, max=255))


class ProjectStatusSchema(Schema):
    status = fields.Str(required=True, validate=validate.OneOf(PROJECT_STATUSES))


class ResponsibleSchema(Schema):
    user_id = fields.Int(required=True, error_messages={'required': 'user_id is required'})


# ============================================
# 輔助函數: 專案範圍判斷
# ============================================

def get_project_or_404(project_id):
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFound('Project not found')
    return project


def user_manages_project(user_id, project):
    """建立者, 或啟用中的負責人"""
    if project.created_by == user_id:
        return True
    return ProjectResponsible.query.filter_by(
        project_id=project.id, user_id=user_id, active=True
    ).first() is not None


def user_participates_in_project(user_id, project):
    """負責人, 或至少被指派了一個這個專案的任務"""
    if user_manages_project(user_id, project):
        return True
    return Task.query.filter_by(project_id=project.id, assigned_to=user_id).first() is not None


def is_project_manager(principal, project_id, **kwargs):
    return user_manages_project(principal.user_id, get_project_or_404(project_id))


def is_project_member(principal, project_id, **kwargs):
    return user_participates_in_project(principal.user_id, get_project_or_404(project_id))


def visible_projects_query(principal):
    """
    目前使用者看得到的專案

    改進點:
    1. 有 projects:list_all 直接回全部
    2. 其他人用 subquery 一次查完 (建立者 / 負責人 / 被指派任務)
    """
    query = Project.query
    if principal.has_capability(Capability.PROJECTS_LIST_ALL):
        return query

    responsible_ids = db.session.query(ProjectResponsible.project_id).filter(
        ProjectResponsible.user_id == principal.user_id,
        ProjectResponsible.active.is_(True)
    )
    assigned_ids = db.session.query(Task.project_id).filter(
        Task.assigned_to == principal.user_id
    )

    return query.filter(or_(
        Project.created_by == principal.user_id,
        Project.id.in_(responsible_ids),
        Project.id.in_(assigned_ids)
    ))


def _ensure_unique_name(name, exclude_id=None):
    query = Project.query.filter(func.lower(Project.name) == name.lower())
    if exclude_id is not None:
        query = query.filter(Project.id != exclude_id)
    if query.first():
        raise Conflict('A project with that name already exists')


def _commit(action_description):
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise Conflict('A project with that name already exists')
    except Exception:
        db.session.rollback()
        logger.error(f"{action_description} failed", exc_info=True)
        raise


# ============================================
# 建立 / 列表
# ============================================

@projects_bp.route('', methods=['POST'])
@capability_required(Capability.PROJECTS_CREATE)
def create_project():
    """
    建立專案

    建立者在同一個 transaction 裡自動成為負責人
    """
    principal = get_principal()
    result = load_request_data(CreateProjectSchema)
    _ensure_unique_name(result['name'])

    project = Project(
        name=result['name'],
        description=result.get('description'),
        start_date=result.get('start_date'),
        end_date=result.get('end_date'),
        status='planning',
        created_by=principal.user_id
    )
    db.session.add(project)
    db.session.flush()

    db.session.add(ProjectResponsible(
        project_id=project.id,
        user_id=principal.user_id,
        assigned_by=principal.user_id
    ))
    log_activity(principal.user_id, 'create_project', 'project', project.id,
                 project_id=project.id, details={'name': project.name})
    _commit('Project creation')

    logger.info(f"Project {project.id} created by user {principal.user_id}")

    return jsonify({
        'success': True,
        'message': 'Project created successfully',
        'data': {'project': project.to_dict()}
    }), 201


@projects_bp.route('', methods=['GET'])
@jwt_required()
def list_projects():
    """
    取得看得到的專案列表 (含任務數)

    改進點:
    1. 加上分頁
    2. 加上 status / search 篩選
    3. 任務數用一次 GROUP BY 算完, 避免 N+1

    Query params: page, per_page, status, search
    """
    principal = get_principal()

    page = request.args.get('page', 1, type=int)
    per_page = request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int)
    per_page = max(1, min(per_page, current_app.config['MAX_PAGE_SIZE']))

    query = visible_projects_query(principal)

    status = request.args.get('status')
    if status:
        if status not in PROJECT_STATUSES:
            raise ValidationError('Validation failed', errors={'status': ['Invalid status']})
        query = query.filter(Project.status == status)

    search = request.args.get('search', '').strip()
    if search:
        query = query.filter(func.lower(Project.name).like(f'%{search.lower()}%'))

    result = query.order_by(Project.created_at.desc(), Project.id.desc()).paginate(
        page=page, per_page=per_page, error_out=False
    )

    # 一次查出所有專案的任務數, 不要每個專案各查一次
    project_ids = [project.id for project in result.items]
    counts = {}
    if project_ids:
        rows = db.session.query(
            Task.project_id,
            func.count(Task.id),
            func.sum(case((Task.status == 'completed', 1), else_=0))
        ).filter(Task.project_id.in_(project_ids)).group_by(Task.project_id).all()
        counts = {row[0]: (row[1], row[2] or 0) for row in rows}

    projects = []
    for project in result.items:
        data = project.to_dict()
        total, completed = counts.get(project.id, (0, 0))
        data['task_count'] = total
        data['completed_task_count'] = completed
        projects.append(data)

    return jsonify({
        'success': True,
        'data': {
            'projects': projects,
            'pagination': {
                'page': page,
                'per_page': per_page,
                'total': result.total,
                'total_pages': result.pages
            }
        }
    }), 200


# ============================================
# 讀取 / 更新 / 刪除
# ============================================

@projects_bp.route('/<int:project_id>', methods=['GET'])
@role_and_scope_required(Capability.PROJECTS_READ, Capability.PROJECTS_LIST_ALL, is_project_member)
def get_project(project_id):
    project = get_project_or_404(project_id)
    principal = get_principal()

    data = project.to_dict()
    data['responsibles'] = [
        responsible.to_dict() for responsible in project.responsibles if responsible.active
    ]
    data['task_summary'] = project_task_summary(project.id)
    data['can_manage'] = (
        principal.has_capability(Capability.PROJECTS_MANAGE_ALL)
        or user_manages_project(principal.user_id, project)
    )

    return jsonify({
        'success': True,
        'data': {'project': data}
    }), 200


def project_task_summary(project_id):
    rows = db.session.query(Task.status, func.count(Task.id)).filter(
        Task.project_id == project_id
    ).group_by(Task.status).all()

    summary = {status: 0 for status in ['pending', 'in_progress', 'completed', 'cancelled']}
    for status, count in rows:
        summary[status] = count
    summary['total'] = sum(summary.values())
    return summary


@projects_bp.route('/<int:project_id>', methods=['PATCH'])
@role_and_scope_required(Capability.PROJECTS_UPDATE, Capability.PROJECTS_MANAGE_ALL, is_project_manager)
def update_project(project_id):
    """
    更新專案

    改進點:
    1. 只記錄真的有變的欄位 (activity log 的 changes)
    2. 沒有變更就直接回 200, 不寫 DB
    3. 日期順序用合併後的值檢查 (只改 end_date 也會檢查)
    """
    project = get_project_or_404(project_id)
    principal = get_principal()
    result = load_request_data(UpdateProjectSchema, partial=True)

    if 'name' in result and result['name'] != project.name:
        _ensure_unique_name(result['name'], exclude_id=project.id)

    start = result.get('start_date', project.start_date)
    end = result.get('end_date', project.end_date)
    if start and end and end < start:
        raise ValidationError('Validation failed', errors={'end_date': ['End date must not be before start date']})

    changes = {}
    for field in ['name', 'description', 'start_date', 'end_date']:
        if field in result:
            old_value = getattr(project, field)
            new_value = result[field]
            if old_value != new_value:
                changes[field] = {
                    'old': old_value.isoformat() if hasattr(old_value, 'isoformat') else old_value,
                    'new': new_value.isoformat() if hasattr(new_value, 'isoformat') else new_value
                }
                setattr(project, field, new_value)

    if not changes:
        return jsonify({
            'success': True,
            'message': 'No changes to update',
            'data': {'project': project.to_dict()}
        }), 200

    log_activity(principal.user_id, 'update_project', 'project', project.id,
                 project_id=project.id, details={'changes': changes})
    _commit('Project update')

    logger.info(f"Project {project.id} updated by user {principal.user_id}")

    return jsonify({
        'success': True,
        'message': 'Project updated successfully',
        'data': {'project': project.to_dict()}
    }), 200


@projects_bp.route('/<int:project_id>/status', methods=['PATCH'])
@role_and_scope_required(Capability.PROJECTS_UPDATE, Capability.PROJECTS_MANAGE_ALL, is_project_manager)
def change_project_status(project_id):
    """變更專案狀態 (只接受 PROJECT_TRANSITIONS 裡的轉換)"""
    project = get_project_or_404(project_id)
    principal = get_principal()
    result = load_request_data(ProjectStatusSchema)

    new_status = result['status']
    if new_status not in PROJECT_TRANSITIONS[project.status]:
        raise ValidationError(f'Cannot change project status from {project.status} to {new_status}')

    old_status = project.status
    project.status = new_status
    log_activity(principal.user_id, 'change_project_status', 'project', project.id,
                 project_id=project.id, details={'old': old_status, 'new': new_status})
    _commit('Project status change')

    return jsonify({
        'success': True,
        'message': 'Project status updated',
        'data': {'project': project.to_dict()}
    }), 200


@projects_bp.route('/<int:project_id>', methods=['DELETE'])
@role_and_scope_required(Capability.PROJECTS_DELETE, Capability.PROJECTS_MANAGE_ALL, is_project_manager)
def delete_project(project_id):
    """刪除專案 (任務一起刪, 僅限持有 projects:delete 的角色)"""
    project = get_project_or_404(project_id)
    principal = get_principal()

    log_activity(principal.user_id, 'delete_project', 'project', project.id,
                 project_id=project.id, details={'name': project.name})
    db.session.delete(project)
    _commit('Project deletion')

    logger.info(f"Project {project_id} deleted by user {principal.user_id}")

    return jsonify({
        'success': True,
        'message': 'Project deleted successfully'
    }), 200


# ============================================
# 專案負責人 (Responsibles)
# ============================================

@projects_bp.route('/<int:project_id>/responsibles', methods=['GET'])
@role_and_scope_required(Capability.PROJECTS_READ, Capability.PROJECTS_LIST_ALL, is_project_member)
def list_responsibles(project_id):
    project = get_project_or_404(project_id)

    return jsonify({
        'success': True,
        'data': {
            'responsibles': [r.to_dict() for r in project.responsibles if r.active]
        }
    }), 200


@projects_bp.route('/<int:project_id>/responsibles', methods=['POST'])
@role_and_scope_required(Capability.PROJECTS_ASSIGN_RESPONSIBLES, Capability.PROJECTS_MANAGE_ALL, is_project_manager)
def add_responsible(project_id):
    """新增專案負責人; 之前被移除過的就重新啟用那一筆"""
    project = get_project_or_404(project_id)
    principal = get_principal()
    result = load_request_data(ResponsibleSchema)

    user = get_user_or_404(result['user_id'])
    if not user.is_active:
        raise ValidationError('Cannot assign an inactive user')

    responsible = ProjectResponsible.query.filter_by(project_id=project.id, user_id=user.id).first()
    if responsible and responsible.active:
        raise Conflict('User is already responsible for this project')

    if responsible:
        responsible.active = True
        responsible.assigned_by = principal.user_id
        responsible.assigned_at = utcnow()
    else:
        responsible = ProjectResponsible(
            project_id=project.id,
            user_id=user.id,
            assigned_by=principal.user_id
        )
        db.session.add(responsible)

    log_activity(principal.user_id, 'assign_responsible', 'project', project.id,
                 project_id=project.id, details={'user_id': user.id})
    _commit('Responsible assignment')

    return jsonify({
        'success': True,
        'message': 'Responsible assigned successfully',
        'data': {'responsible': responsible.to_dict()}
    }), 201


@projects_bp.route('/<int:project_id>/responsibles/<int:user_id>', methods=['DELETE'])
@role_and_scope_required(Capability.PROJECTS_ASSIGN_RESPONSIBLES, Capability.PROJECTS_MANAGE_ALL, is_project_manager)
def remove_responsible(project_id, user_id):
    project = get_project_or_404(project_id)
    principal = get_principal()

    responsible = ProjectResponsible.query.filter_by(
        project_id=project.id, user_id=user_id, active=True
    ).first()
    if responsible is None:
        raise NotFound('User is not responsible for this project')

    responsible.active = False
    log_activity(principal.user_id, 'remove_responsible', 'project', project.id,
                 project_id=project.id, details={'user_id': user_id})
    _commit('Responsible removal')

    return jsonify({
        'success': True,
        'message': 'Responsible removed successfully'
    }), 200


# ============================================
# Activity
# ============================================

@projects_bp.route('/<int:project_id>/activity', methods=['GET'])
@owner_or_capability_required(Capability.LOGS_READ, is_project_member)
def project_activity(project_id):
    get_project_or_404(project_id)
    query = ActivityLog.query.filter_by(project_id=project_id)

    return jsonify({
        'success': True,
        'data': paginate_activity(query)
    }), 200


def get_projects_overview(principal):
    """dashboard 用: 各狀態的專案數 (只算看得到的)"""
    visible_ids = visible_projects_query(principal).with_entities(Project.id)

    rows = db.session.query(Project.status, func.count(Project.id)).filter(
        Project.id.in_(visible_ids)
    ).group_by(Project.status).all()

    overview = {status: 0 for status in PROJECT_STATUSES}
    for status, count in rows:
        overview[status] = count
    overview['total'] = sum(overview[status] for status in PROJECT_STATUSES)
    return overview
