from flask import Blueprint, request, jsonify, current_app, has_request_context
from flask_jwt_extended import jwt_required
from marshmallow import Schema, fields, validate, EXCLUDE
from models import db, ActivityLog
from permissions import Capability, capability_required, get_principal
from errors import load_request_data
import logging

activity_bp = Blueprint('activity', __name__)
logger = logging.getLogger(__name__)


# ============================================
# 輔助函數 (每個會改資料的地方都會呼叫)
# ============================================

def log_activity(user_id, action, resource_type=None, resource_id=None,
                 project_id=None, details=None):
    """
    記錄 activity log

    只加進 session 不 commit, 由呼叫端 commit,
    這樣 log 和它描述的變更在同一個 transaction。
    """
    entry = ActivityLog(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        project_id=project_id,
        details=details,
        ip_address=request.remote_addr if has_request_context() else None
    )
    db.session.add(entry)
    return entry


def paginate_activity(query):
    page = request.args.get('page', 1, type=int)
    per_page = request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int)
    per_page = max(1, min(per_page, current_app.config['MAX_PAGE_SIZE']))

    result = query.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).paginate(
        page=page, per_page=per_page, error_out=False
    )

    return {
        'activities': [entry.to_dict() for entry in result.items],
        'pagination': {
            'page': page,
            'per_page': per_page,
            'total': result.total,
            'total_pages': result.pages
        }
    }


class ActivityFilterSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    user_id = fields.Int()
    action = fields.Str(validate=validate.Length(max=100))
    resource_type = fields.Str(validate=validate.Length(max=50))
    project_id = fields.Int()


# ============================================
# Routes
# ============================================

@activity_bp.route('', methods=['GET'])
@capability_required(Capability.LOGS_READ)
def list_activity():
    """完整的 activity log (可依 user / action / resource_type / project 篩選)"""
    filters = load_request_data(ActivityFilterSchema, request.args.to_dict())

    query = ActivityLog.query
    for field, value in filters.items():
        query = query.filter(getattr(ActivityLog, field) == value)

    return jsonify({
        'success': True,
        'data': paginate_activity(query)
    }), 200


@activity_bp.route('/me', methods=['GET'])
@jwt_required()
def my_activity():
    """自己的操作紀錄"""
    principal = get_principal()
    query = ActivityLog.query.filter_by(user_id=principal.user_id)

    return jsonify({
        'success': True,
        'data': paginate_activity(query)
    }), 200
