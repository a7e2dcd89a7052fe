from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required
from sqlalchemy import func, case, or_
from models import db, Project, Task, ActivityLog, RefreshToken, utcnow
from permissions import Capability, admin_required, capability_required, get_principal
from projects import get_projects_overview, visible_projects_query
from tasks import OPEN_STATUSES, get_task_statistics
from users import get_user_statistics
import logging

dashboard_bp = Blueprint('dashboard', __name__)
logger = logging.getLogger(__name__)

MAX_DASHBOARD_ITEMS = 50


def _limit_arg(default=10):
    limit = request.args.get('limit', default, type=int)
    return max(1, min(limit, MAX_DASHBOARD_ITEMS))


# ============================================
# 總覽 (Summary)
# ============================================

@dashboard_bp.route('/summary', methods=['GET'])
@jwt_required()
def summary():
    """
    Dashboard 總覽

    改進點:
    1. 專案 / 任務數字只算自己看得到的
    2. 管理員另外拿到使用者統計
    """
    principal = get_principal()

    data = {
        'projects': get_projects_overview(principal),
        'tasks': get_task_statistics(principal),
    }
    if principal.is_superuser:
        data['users'] = get_user_statistics()

    return jsonify({
        'success': True,
        'data': data
    }), 200


@dashboard_bp.route('/projects/stats', methods=['GET'])
@capability_required(Capability.PROJECTS_READ)
def project_stats():
    """每個看得到的專案的進度 (完成任務 / 全部任務)"""
    principal = get_principal()
    project_ids = visible_projects_query(principal).with_entities(Project.id)

    rows = db.session.query(
        Project.id,
        Project.name,
        Project.status,
        func.count(Task.id),
        func.sum(case((Task.status == 'completed', 1), else_=0))
    ).outerjoin(Task, Task.project_id == Project.id).filter(
        Project.id.in_(project_ids)
    ).group_by(Project.id, Project.name, Project.status).order_by(Project.id).all()

    projects = []
    for project_id, name, status, total, completed in rows:
        completed = int(completed or 0)
        projects.append({
            'id': project_id,
            'name': name,
            'status': status,
            'total_tasks': total,
            'completed_tasks': completed,
            'progress': round(completed / total * 100, 1) if total else 0.0
        })

    return jsonify({
        'success': True,
        'data': {
            'overview': get_projects_overview(principal),
            'projects': projects
        }
    }), 200


@dashboard_bp.route('/tasks/stats', methods=['GET'])
@capability_required(Capability.TASKS_READ)
def task_stats():
    return jsonify({
        'success': True,
        'data': {'stats': get_task_statistics(get_principal())}
    }), 200


@dashboard_bp.route('/admin/stats', methods=['GET'])
@admin_required
def admin_stats():
    """全系統統計 (僅限管理員)"""
    now = utcnow()
    active_sessions = RefreshToken.query.filter(
        RefreshToken.revoked.is_(False),
        RefreshToken.expires_at > now
    ).count()

    users_with_tasks = db.session.query(func.count(func.distinct(Task.assigned_to))).filter(
        Task.assigned_to.isnot(None)
    ).scalar()

    return jsonify({
        'success': True,
        'data': {
            'users': get_user_statistics(),
            'projects': {
                'total': Project.query.count(),
                'by_status': dict(
                    db.session.query(Project.status, func.count(Project.id)).group_by(Project.status).all()
                )
            },
            'tasks': {
                'total': Task.query.count(),
                'by_status': dict(
                    db.session.query(Task.status, func.count(Task.id)).group_by(Task.status).all()
                ),
                'users_with_tasks': users_with_tasks or 0
            },
            'active_sessions': active_sessions
        }
    }), 200


# ============================================
# 列表
# ============================================

@dashboard_bp.route('/tasks/pending', methods=['GET'])
@jwt_required()
def pending_tasks():
    """指派給自己、還沒結束的任務, 到期日早的排前面"""
    principal = get_principal()
    now = utcnow()

    tasks = Task.query.filter(
        Task.assigned_to == principal.user_id,
        Task.status.in_(OPEN_STATUSES)
    ).order_by(
        Task.due_date.is_(None),
        Task.due_date.asc(),
        Task.id.asc()
    ).limit(_limit_arg()).all()

    items = []
    for task in tasks:
        data = task.to_dict()
        data['project'] = {'id': task.project.id, 'name': task.project.name}
        data['is_overdue'] = task.due_date is not None and task.due_date < now
        items.append(data)

    return jsonify({
        'success': True,
        'data': {
            'tasks': items,
            'overdue_count': sum(1 for item in items if item['is_overdue'])
        }
    }), 200


@dashboard_bp.route('/activity/recent', methods=['GET'])
@jwt_required()
def recent_activity():
    """
    最近的活動紀錄

    有 logs:read 看全部; 其他人只看自己的操作, 以及看得到的專案裡的活動
    """
    principal = get_principal()
    query = ActivityLog.query

    if not principal.has_capability(Capability.LOGS_READ):
        project_ids = visible_projects_query(principal).with_entities(Project.id)
        query = query.filter(or_(
            ActivityLog.user_id == principal.user_id,
            ActivityLog.project_id.in_(project_ids)
        ))

    entries = query.order_by(
        ActivityLog.created_at.desc(), ActivityLog.id.desc()
    ).limit(_limit_arg()).all()

    return jsonify({
        'success': True,
        'data': {'activities': [entry.to_dict() for entry in entries]}
    }), 200

