from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required, current_user
from marshmallow import Schema, fields, validate
from models import db
from extensions import limiter, get_auth_service, get_token_service
from permissions import Capability, get_principal
from errors import ValidationError, load_request_data
import logging

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)


# ============================================
# Helper Functions
# ============================================

def extract_bearer_token():
    """從 'Authorization: Bearer <token>' 取出 token, 格式不對回 None"""
    header = request.headers.get('Authorization', '')
    parts = header.split()
    if len(parts) != 2 or parts[0] != 'Bearer':
        return None
    return parts[1]


def _register_limit():
    return current_app.config['REGISTER_RATE_LIMIT']


def _login_limit():
    return current_app.config['LOGIN_RATE_LIMIT']


# ============================================
# Register
# ============================================

@auth_bp.route('/register', methods=['POST'])
@limiter.limit(_register_limit)
def register():
    """
    使用者註冊

    改進點:
    1. 輸入驗證交給 AuthService (marshmallow)
    2. 回應只有 user 資料, 不發 token (要另外登入)
    3. rate limit 防止大量註冊
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')

    user = get_auth_service().register(data)

    return jsonify({
        'success': True,
        'message': 'User registered successfully',
        'data': {'user': user.to_dict()}
    }), 201


# ============================================
# Login
# ============================================

@auth_bp.route('/login', methods=['POST'])
@limiter.limit(_login_limit)
def login():
    """
    使用者登入, 換 access token + refresh token

    改進點:
    1. 查無 email、密碼錯、帳號停用都回同一個 401 (避免帳號枚舉攻擊)
    2. 登入嘗試有 rate limit
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')

    result = get_auth_service().login(data.get('email'), data.get('password'))

    return jsonify({
        'success': True,
        'message': 'Login successful',
        'data': {
            'user': result['user'].to_dict(),
            'access_token': result['access_token'],
            'refresh_token': result['refresh_token']
        }
    }), 200


# ============================================
# Verify
# ============================================

@auth_bp.route('/verify', methods=['GET'])
def verify():
    """檢查 bearer token: 黑名單、簽章、到期時間, 以及使用者是否仍啟用"""
    user = get_auth_service().verify_token(extract_bearer_token())

    return jsonify({
        'success': True,
        'message': 'Token is valid',
        'data': {'user': user.to_dict()}
    }), 200


# ============================================
# Refresh
# ============================================

class RefreshTokenSchema(Schema):
    refresh_token = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=256),
        error_messages={'required': 'Refresh token is required'}
    )


@auth_bp.route('/refresh-token', methods=['POST'])
def refresh_token():
    """
    刷新 access token

    送來的 refresh token 用過即作廢, 回應帶新的 refresh token 和 access token
    """
    result = load_request_data(RefreshTokenSchema)

    tokens = get_auth_service().refresh_access_token(result['refresh_token'])

    return jsonify({
        'success': True,
        'message': 'Token refreshed successfully',
        'data': {
            'access_token': tokens['access_token'],
            'refresh_token': tokens['refresh_token'],
            'user': tokens['user'].to_dict()
        }
    }), 200


# ============================================
# Change password
# ============================================

@auth_bp.route('/change-password', methods=['PUT'])
@jwt_required()
def change_password():
    """修改密碼 (目前密碼錯誤回 400, 不是 401)"""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')

    get_auth_service().change_password(
        current_user.id,
        data.get('current_password'),
        data.get('new_password')
    )

    return jsonify({
        'success': True,
        'message': 'Password changed successfully'
    }), 200


# ============================================
# Logout
# ============================================

class LogoutSchema(Schema):
    """登出輸入驗證 (body 可省略)"""
    refresh_token = fields.Str(validate=validate.Length(min=1, max=256))


@auth_bp.route('/logout', methods=['POST'])
@jwt_required()
def logout():
    """
    登出目前的 session

    Bearer token 進黑名單; body 帶 refresh_token 時一併撤銷。
    沒有 body 也可以, 但 body 不是 JSON object 時回 400。
    """
    data = request.get_json(silent=True)
    result = load_request_data(LogoutSchema, {} if data is None else data)

    get_auth_service().logout(
        access_token=extract_bearer_token(),
        refresh_token=result.get('refresh_token'),
        user_id=current_user.id
    )

    return jsonify({
        'success': True,
        'message': 'Logout successful'
    }), 200


@auth_bp.route('/logout-all', methods=['POST'])
@jwt_required()
def logout_all():
    """登出所有裝置 (撤銷全部 refresh token)"""
    revoked = get_auth_service().logout_all(
        current_user.id,
        access_token=extract_bearer_token()
    )

    return jsonify({
        'success': True,
        'message': 'All sessions closed',
        'data': {'revoked_sessions': revoked}
    }), 200


# ============================================
# Profile
# ============================================

class UpdateProfileSchema(Schema):
    name = fields.Str(validate=validate.Length(min=2, max=100))
    phone = fields.Str(validate=validate.Length(max=20), allow_none=True)


@auth_bp.route('/profile', methods=['GET'])
@jwt_required()
def get_profile():
    """
    取得當前登入使用者的資訊

    除了基本資料, 也回傳角色、實際拿到的權限和 session 統計
    """
    principal = get_principal()
    profile = current_user.to_dict()
    capabilities = Capability if principal.is_superuser else principal.capabilities
    profile['capabilities'] = sorted(c.value for c in capabilities)
    profile['sessions'] = get_token_service().token_stats(current_user.id)

    return jsonify({
        'success': True,
        'data': {'user': profile}
    }), 200


@auth_bp.route('/profile', methods=['PATCH'])
@jwt_required()
def update_profile():
    result = load_request_data(UpdateProfileSchema)
    user = current_user

    for field in ['name', 'phone']:
        if field in result:
            setattr(user, field, result[field])

    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.error(f"Profile update error for user {user.id}", exc_info=True)
        raise

    logger.info(f"Profile updated for user {user.id}")

    return jsonify({
        'success': True,
        'message': 'Profile updated successfully',
        'data': {'user': user.to_dict()}
    }), 200
