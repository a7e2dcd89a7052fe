"""
統一的錯誤類別

Service 和 blueprint 直接 raise, app.py 的 error handler 轉成
{success: false, message, errors?} 加上對應的 status code。
"""
from flask import request
from marshmallow import ValidationError as SchemaValidationError


class APIError(Exception):
    status_code = 500
    message = 'An unexpected error occurred. Please try again later.'

    def __init__(self, message=None, errors=None):
        super().__init__(message or self.message)
        if message:
            self.message = message
        self.errors = errors

    def to_dict(self):
        body = {'success': False, 'message': self.message}
        if self.errors:
            body['errors'] = self.errors
        return body


# ============================================
# 400
# ============================================

class ValidationError(APIError):
    status_code = 400
    message = 'Validation failed'


class IncorrectPassword(APIError):
    status_code = 400
    message = 'Current password is incorrect'


# ============================================
# 401 (回給 client 的訊息一律是通用訊息)
# ============================================

class AuthenticationFailed(APIError):
    status_code = 401
    message = 'Authentication failed'
    public_message = 'Invalid or expired credentials'

    def to_dict(self):
        return {'success': False, 'message': self.public_message}


class InvalidCredentials(AuthenticationFailed):
    message = 'Invalid credentials'
    public_message = 'Invalid credentials'


class TokenInvalid(AuthenticationFailed):
    message = 'Token is invalid'


class TokenExpired(AuthenticationFailed):
    message = 'Token has expired'


class UserInactive(AuthenticationFailed):
    message = 'User is inactive'


class InvalidRefreshToken(AuthenticationFailed):
    message = 'Refresh token is invalid, revoked or expired'


# ============================================
# 403 / 404 / 409 / 500
# ============================================

class Forbidden(APIError):
    status_code = 403
    message = 'You do not have permission to perform this action'


class NotFound(APIError):
    status_code = 404
    message = 'The requested resource does not exist'


class Conflict(APIError):
    status_code = 409
    message = 'The request conflicts with the current state of the resource'


class DuplicateEmail(Conflict):
    message = 'Email already registered'


class InternalError(APIError):
    status_code = 500


# ============================================
# Request 解析
# ============================================

def load_request_data(schema_class, data=None, partial=False):
    """
    統一的輸入驗證函數

    改進點: 驗證失敗直接 raise ValidationError (帶欄位錯誤訊息),
    不再回傳 (is_valid, result) tuple 讓每個 route 自己判斷。
    """
    if data is None:
        data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')

    try:
        return schema_class().load(data, partial=partial)
    except SchemaValidationError as err:
        raise ValidationError('Validation failed', errors=err.messages)
