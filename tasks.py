from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required
from sqlalchemy import func, case
from sqlalchemy.orm import joinedload
from marshmallow import Schema, fields, validate
from models import db, Task, Project, User, utcnow
from permissions import Capability, role_and_scope_required, get_principal
from projects import (
    get_project_or_404, is_project_manager, is_project_member,
    user_manages_project, visible_projects_query
)
from activity import log_activity
from errors import NotFound, Conflict, ValidationError, load_request_data
from datetime import timezone
import logging

tasks_bp = Blueprint('tasks', __name__)
logger = logging.getLogger(__name__)

TASK_STATUSES = ['pending', 'in_progress', 'completed', 'cancelled']
TASK_PRIORITIES = ['low', 'medium', 'high', 'urgent']
OPEN_STATUSES = ['pending', 'in_progress']

TASK_TRANSITIONS = {
    'pending': ['in_progress', 'cancelled'],
    'in_progress': ['completed', 'pending', 'cancelled'],
    'completed': ['in_progress'],
    'cancelled': ['pending'],
}


# ============================================
# Input Validation Schemas
# ============================================

class CreateTaskSchema(Schema):
    """建立任務驗證 (status 不能指定, 一律從 pending 開始)"""
    title = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Task title is required'}
    )
    description = fields.Str(validate=validate.Length(max=5000), allow_none=True)
    priority = fields.Str(validate=validate.OneOf(TASK_PRIORITIES), load_default='medium')
    assigned_to = fields.Int(allow_none=True)
    due_date = fields.NaiveDateTime(timezone=timezone.utc, allow_none=True)


class UpdateTaskSchema(Schema):
    """更新任務驗證"""
    title = fields.Str(validate=validate.Length(min=1, max=255))
    description = fields.Str(validate=validate.Length(max=5000), allow_none=True)
    priority = fields.Str(validate=validate.OneOf(TASK_PRIORITIES))
    assigned_to = fields.Int(allow_none=True)
    due_date = fields.NaiveDateTime(timezone=timezone.utc, allow_none=True)


class TaskStatusSchema(Schema):
    status = fields.Str(required=True, validate=validate.OneOf(TASK_STATUSES))


# ============================================
# 輔助函數
# ============================================

def get_task_or_404(task_id):
    task = db.session.get(Task, task_id)
    if task is None:
        raise NotFound('Task not found')
    return task


def is_task_owner(principal, task_id, **kwargs):
    """建立者、被指派者, 或任務所屬專案的負責人"""
    task = get_task_or_404(task_id)
    if principal.user_id in (task.created_by, task.assigned_to):
        return True
    return user_manages_project(principal.user_id, task.project)


def can_delete_task(principal, task_id, **kwargs):
    """建立者或專案負責人; 只是被指派的人不能刪"""
    task = get_task_or_404(task_id)
    if task.created_by == principal.user_id:
        return True
    return user_manages_project(principal.user_id, task.project)


def _resolve_assignee(user_id):
    if user_id is None:
        return None
    user = db.session.get(User, user_id)
    if user is None:
        raise ValidationError('Validation failed', errors={'assigned_to': ['User not found']})
    if not user.is_active:
        raise ValidationError('Validation failed', errors={'assigned_to': ['User is inactive']})
    return user


def _pagination_args():
    page = request.args.get('page', 1, type=int)
    per_page = request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int)
    return page, max(1, min(per_page, current_app.config['MAX_PAGE_SIZE']))


def _apply_filters(query):
    """套用 query params: status, priority, assigned_to, overdue, sort_by/sort_order"""
    status = request.args.get('status')
    if status:
        if status not in TASK_STATUSES:
            raise ValidationError('Validation failed', errors={'status': ['Invalid status']})
        query = query.filter(Task.status == status)

    priority = request.args.get('priority')
    if priority:
        if priority not in TASK_PRIORITIES:
            raise ValidationError('Validation failed', errors={'priority': ['Invalid priority']})
        query = query.filter(Task.priority == priority)

    assigned_to = request.args.get('assigned_to', type=int)
    if assigned_to:
        query = query.filter(Task.assigned_to == assigned_to)

    if request.args.get('overdue', '').lower() == 'true':
        query = query.filter(Task.due_date < utcnow(), Task.status.in_(OPEN_STATUSES))

    sort_by = request.args.get('sort_by', 'created_at')
    if sort_by == 'due_date':
        order_column = Task.due_date
    elif sort_by == 'priority':
        # 依嚴重程度排序, 不是字母順序
        order_column = case(
            {name: rank for rank, name in enumerate(TASK_PRIORITIES)},
            value=Task.priority
        )
    else:
        order_column = Task.created_at

    if request.args.get('sort_order', 'desc') == 'asc':
        return query.order_by(order_column.asc(), Task.id.asc())
    return query.order_by(order_column.desc(), Task.id.desc())


def _paginated_response(query):
    page, per_page = _pagination_args()
    result = query.options(
        joinedload(Task.creator),
        joinedload(Task.assignee)
    ).paginate(page=page, per_page=per_page, error_out=False)

    return {
        'tasks': [task.to_dict() for task in result.items],
        'pagination': {
            'page': page,
            'per_page': per_page,
            'total': result.total,
            'total_pages': result.pages
        }
    }


def _commit(action_description):
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.error(f"{action_description} failed", exc_info=True)
        raise


# ============================================
# 專案的任務
# ============================================

@tasks_bp.route('/projects/<int:project_id>/tasks', methods=['POST'])
@role_and_scope_required(Capability.TASKS_CREATE, Capability.TASKS_MANAGE_ALL, is_project_manager)
def create_task(project_id):
    """
    在專案中建立任務

    改進點:
    1. 狀態一律從 pending 開始
    2. 被指派者必須存在且啟用中
    3. 已完成 / 已取消的專案不能再加任務 (409)
    """
    project = get_project_or_404(project_id)
    principal = get_principal()
    result = load_request_data(CreateTaskSchema)

    if project.status in ('completed', 'cancelled'):
        raise Conflict(f'Cannot add tasks to a {project.status} project')

    assignee = _resolve_assignee(result.get('assigned_to'))

    task = Task(
        title=result['title'],
        description=result.get('description'),
        priority=result['priority'],
        status='pending',
        project_id=project.id,
        assigned_to=assignee.id if assignee else None,
        created_by=principal.user_id,
        due_date=result.get('due_date')
    )
    db.session.add(task)
    db.session.flush()

    log_activity(principal.user_id, 'create_task', 'task', task.id,
                 project_id=project.id, details={'title': task.title})
    if assignee:
        log_activity(principal.user_id, 'assign_task', 'task', task.id,
                     project_id=project.id, details={'assigned_to': assignee.id})
    _commit('Task creation')

    logger.info(f"Task {task.id} created in project {project.id} by user {principal.user_id}")

    return jsonify({
        'success': True,
        'message': 'Task created successfully',
        'data': {'task': task.to_dict()}
    }), 201


@tasks_bp.route('/projects/<int:project_id>/tasks', methods=['GET'])
@role_and_scope_required(Capability.TASKS_READ, Capability.TASKS_LIST_ALL, is_project_member)
def list_project_tasks(project_id):
    """
    取得專案的任務列表

    Query params: page, per_page, status, priority, assigned_to, overdue,
    sort_by (created_at, due_date, priority), sort_order (asc, desc)
    """
    get_project_or_404(project_id)
    query = _apply_filters(Task.query.filter(Task.project_id == project_id))

    return jsonify({
        'success': True,
        'data': _paginated_response(query)
    }), 200


@tasks_bp.route('/tasks/my', methods=['GET'])
@jwt_required()
def my_tasks():
    principal = get_principal()
    query = _apply_filters(Task.query.filter(Task.assigned_to == principal.user_id))

    return jsonify({
        'success': True,
        'data': _paginated_response(query)
    }), 200


# ============================================
# 單一任務
# ============================================

@tasks_bp.route('/tasks/<int:task_id>', methods=['GET'])
@role_and_scope_required(Capability.TASKS_READ, Capability.TASKS_LIST_ALL, is_task_owner)
def get_task(task_id):
    task = get_task_or_404(task_id)

    data = task.to_dict()
    data['project'] = {'id': task.project.id, 'name': task.project.name}
    data['allowed_transitions'] = TASK_TRANSITIONS[task.status]

    return jsonify({
        'success': True,
        'data': {'task': data}
    }), 200


@tasks_bp.route('/tasks/<int:task_id>', methods=['PATCH'])
@role_and_scope_required(Capability.TASKS_UPDATE, Capability.TASKS_MANAGE_ALL, is_task_owner)
def update_task(task_id):
    """更新任務欄位; 狀態要走 /status"""
    task = get_task_or_404(task_id)
    principal = get_principal()
    result = load_request_data(UpdateTaskSchema, partial=True)

    if 'assigned_to' in result:
        _resolve_assignee(result['assigned_to'])

    changes = {}
    for field in ['title', 'description', 'priority', 'assigned_to', 'due_date']:
        if field in result:
            old_value = getattr(task, field)
            new_value = result[field]
            if old_value != new_value:
                changes[field] = {
                    'old': old_value.isoformat() if hasattr(old_value, 'isoformat') else old_value,
                    'new': new_value.isoformat() if hasattr(new_value, 'isoformat') else new_value
                }
                setattr(task, field, new_value)

    if not changes:
        return jsonify({
            'success': True,
            'message': 'No changes to update',
            'data': {'task': task.to_dict()}
        }), 200

    log_activity(principal.user_id, 'update_task', 'task', task.id,
                 project_id=task.project_id, details={'changes': changes})
    if 'assigned_to' in changes:
        log_activity(principal.user_id, 'assign_task', 'task', task.id,
                     project_id=task.project_id, details={'assigned_to': task.assigned_to})
    _commit('Task update')

    return jsonify({
        'success': True,
        'message': 'Task updated successfully',
        'data': {'task': task.to_dict()}
    }), 200


@tasks_bp.route('/tasks/<int:task_id>/status', methods=['PATCH'])
@role_and_scope_required(Capability.TASKS_CHANGE_STATUS, Capability.TASKS_MANAGE_ALL, is_task_owner)
def change_task_status(task_id):
    """
    變更任務狀態

    改進點:
    1. 只接受 TASK_TRANSITIONS 裡的轉換, 其餘 400
    2. completed_at 跟著狀態維護 (完成時寫入, 重開時清掉)
    """
    task = get_task_or_404(task_id)
    principal = get_principal()
    result = load_request_data(TaskStatusSchema)

    new_status = result['status']
    if new_status not in TASK_TRANSITIONS[task.status]:
        raise ValidationError(f'Cannot change task status from {task.status} to {new_status}')

    old_status = task.status
    task.status = new_status
    task.completed_at = utcnow() if new_status == 'completed' else None

    log_activity(principal.user_id, 'change_task_status', 'task', task.id,
                 project_id=task.project_id, details={'old': old_status, 'new': new_status})
    _commit('Task status change')

    logger.info(f"Task {task.id} moved from {old_status} to {new_status} by user {principal.user_id}")

    return jsonify({
        'success': True,
        'message': 'Task status updated',
        'data': {'task': task.to_dict()}
    }), 200


@tasks_bp.route('/tasks/<int:task_id>', methods=['DELETE'])
@role_and_scope_required(Capability.TASKS_DELETE, Capability.TASKS_MANAGE_ALL, can_delete_task)
def delete_task(task_id):
    """刪除任務 (進行中的任務不能刪)"""
    task = get_task_or_404(task_id)
    principal = get_principal()

    if task.status == 'in_progress':
        raise Conflict('Cannot delete a task that is in progress')

    log_activity(principal.user_id, 'delete_task', 'task', task.id,
                 project_id=task.project_id, details={'title': task.title})
    db.session.delete(task)
    _commit('Task deletion')

    logger.info(f"Task {task_id} deleted by user {principal.user_id}")

    return jsonify({
        'success': True,
        'message': 'Task deleted successfully'
    }), 200


# ============================================
# 統計 (Statistics)
# ============================================

def visible_tasks_query(principal):
    """看得到的專案裡的任務, 加上指派給自己的任務"""
    if principal.has_capability(Capability.TASKS_LIST_ALL):
        return Task.query

    project_ids = visible_projects_query(principal).with_entities(Project.id)
    return Task.query.filter(
        (Task.project_id.in_(project_ids)) | (Task.assigned_to == principal.user_id)
    )


def get_task_statistics(principal):
    """
    任務統計 (依狀態 / 優先度), 只算看得到的

    Returns:
        dict: total, by_status, by_priority, overdue, assigned_to_me, completion_rate
    """
    task_ids = visible_tasks_query(principal).with_entities(Task.id)
    scoped = db.session.query(Task).filter(Task.id.in_(task_ids))

    by_status = {status: 0 for status in TASK_STATUSES}
    for status, count in scoped.with_entities(Task.status, func.count(Task.id)).group_by(Task.status):
        by_status[status] = count

    by_priority = {priority: 0 for priority in TASK_PRIORITIES}
    for priority, count in scoped.with_entities(Task.priority, func.count(Task.id)).group_by(Task.priority):
        by_priority[priority] = count

    total = sum(by_status.values())
    overdue = scoped.filter(Task.due_date < utcnow(), Task.status.in_(OPEN_STATUSES)).count()
    assigned_to_me = scoped.filter(Task.assigned_to == principal.user_id).count()

    return {
        'total': total,
        'by_status': by_status,
        'by_priority': by_priority,
        'overdue': overdue,
        'assigned_to_me': assigned_to_me,
        'completion_rate': round(by_status['completed'] / total * 100, 1) if total else 0.0
    }
