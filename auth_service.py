"""
身分驗證的商業邏輯: 註冊、登入、驗證 token、刷新、改密碼、登出

routes (auth.py) 只負責 HTTP, 這裡不碰 request。
"""
import logging
import re
import secrets

import jwt
from flask_jwt_extended import decode_token
from flask_jwt_extended.exceptions import JWTExtendedException
from marshmallow import Schema, fields, validate, pre_load, EXCLUDE
from sqlalchemy.exc import IntegrityError

from activity import log_activity
from errors import (
    ValidationError, DuplicateEmail, InvalidCredentials, TokenInvalid,
    TokenExpired, UserInactive, InvalidRefreshToken, IncorrectPassword,
    NotFound, load_request_data
)
from models import db, User, utcnow

logger = logging.getLogger(__name__)


# ============================================
# Input Validation Schemas
# ============================================

def normalize_email(value):
    return value.strip().lower() if isinstance(value, str) else value


class RegisterSchema(Schema):
    """註冊輸入驗證"""

    class Meta:
        # 多送的欄位 (例如 is_admin) 直接丟掉, 不會被套用
        unknown = EXCLUDE

    name = fields.Str(
        required=True,
        validate=validate.Length(min=2, max=100, error='Name must be 2-100 characters'),
        error_messages={'required': 'Name is required'}
    )
    email = fields.Email(required=True, error_messages={
        'required': 'Email is required',
        'invalid': 'Invalid email format'
    })
    password = fields.Str(
        required=True,
        validate=validate.Length(min=8, max=128, error='Password must be 8-128 characters'),
        error_messages={'required': 'Password is required'}
    )
    phone = fields.Str(validate=validate.Length(max=20), allow_none=True)

    @pre_load
    def normalize(self, data, **kwargs):
        data = dict(data)
        if 'email' in data:
            data['email'] = normalize_email(data['email'])
        if isinstance(data.get('name'), str):
            data['name'] = data['name'].strip()
        if isinstance(data.get('phone'), str):
            data['phone'] = data['phone'].strip() or None
        return data


class LoginSchema(Schema):
    """登入輸入驗證"""

    class Meta:
        unknown = EXCLUDE

    email = fields.Str(required=True, error_messages={'required': 'Email is required'})
    password = fields.Str(required=True, error_messages={'required': 'Password is required'})

    @pre_load
    def normalize(self, data, **kwargs):
        data = dict(data)
        if 'email' in data:
            data['email'] = normalize_email(data['email'])
        return data


class ChangePasswordSchema(Schema):
    """修改密碼驗證"""
    current_password = fields.Str(required=True)
    new_password = fields.Str(
        required=True,
        validate=validate.Length(min=8, max=128, error='Password must be 8-128 characters')
    )


class PasswordPolicy:
    """密碼強度規則 (schema 只檢查長度, 其餘在這裡)"""

    def __init__(self, min_length=8, require_uppercase=False, require_numbers=False,
                 require_special=False):
        self.min_length = min_length
        self.require_uppercase = require_uppercase
        self.require_numbers = require_numbers
        self.require_special = require_special

    @classmethod
    def from_config(cls, config):
        return cls(
            min_length=config['PASSWORD_MIN_LENGTH'],
            require_uppercase=config['PASSWORD_REQUIRE_UPPERCASE'],
            require_numbers=config['PASSWORD_REQUIRE_NUMBERS'],
            require_special=config['PASSWORD_REQUIRE_SPECIAL']
        )

    def check(self, password, field='password'):
        problems = []
        if len(password) < self.min_length:
            problems.append(f'Password must be at least {self.min_length} characters')
        if self.require_uppercase and not re.search(r'[A-Z]', password):
            problems.append('Password must contain an uppercase letter')
        if self.require_numbers and not re.search(r'\d', password):
            problems.append('Password must contain a number')
        if self.require_special and not re.search(r'[^A-Za-z0-9]', password):
            problems.append('Password must contain a special character')

        if problems:
            raise ValidationError('Validation failed', errors={field: problems})


# ============================================
# AuthService
# ============================================

class AuthService:
    """
    串接 User 資料和 TokenService

    改進點:
    1. 失敗一律丟 errors.* 例外, 不會回傳 None 讓呼叫端自己猜
    2. bcrypt / token service 由建構時注入, 測試可以替換
    3. 登入失敗的三種情況回應完全一樣, 避免帳號枚舉
    """

    def __init__(self, bcrypt, token_service, password_policy=None):
        self.bcrypt = bcrypt
        self.tokens = token_service
        self.password_policy = password_policy or PasswordPolicy()
        # 查無此 email 時拿來比對, 讓兩條路徑都只跑一次 bcrypt
        # 建構時就算好, 第一次登入失敗不會多一次 hash
        self.dummy_hash = self._hash_password(secrets.token_hex(16))

    def _hash_password(self, password):
        return self.bcrypt.generate_password_hash(password).decode('utf-8')

    # ============================================
    # 註冊 / 登入
    # ============================================

    def register(self, user_data):
        """
        使用者註冊

        回傳已寫入的 User; 用 to_dict() 序列化, 不會包含密碼 hash。
        """
        user = self._create_user(user_data, is_admin=False, action='register')
        logger.info(f"New user registered: {user.id}")
        return user

    def create_admin(self, user_data):
        """和 register() 一樣的驗證, 但帳號是 is_admin"""
        user = self._create_user(user_data, is_admin=True, action='create_admin')
        logger.info(f"Admin account created: {user.id}")
        return user

    def create_user(self, user_data, is_admin=False, actor_id=None):
        """
        管理員代建帳號 (POST /users)

        驗證規則和 register() 一樣; activity log 記在建立者名下。
        """
        user = self._create_user(user_data, is_admin=is_admin, action='create_user', actor_id=actor_id)
        logger.info(f"User {user.id} created by {actor_id}")
        return user

    def _create_user(self, user_data, is_admin, action, actor_id=None):
        result = load_request_data(RegisterSchema, user_data)
        self.password_policy.check(result['password'])

        if User.query.filter_by(email=result['email']).first():
            raise DuplicateEmail()

        user = User(
            name=result['name'],
            email=result['email'],
            phone=result.get('phone'),
            password_hash=self._hash_password(result['password']),
            is_admin=is_admin,
            is_active=True
        )

        try:
            db.session.add(user)
            db.session.flush()
            log_activity(actor_id or user.id, action, 'user', user.id)
            db.session.commit()
        except IntegrityError:
            # 同一個 email 同時註冊, 被別人搶先
            db.session.rollback()
            raise DuplicateEmail()

        return user

    def login(self, email, password):
        """
        使用者登入

        Returns:
            dict: {'user': User, 'access_token': str, 'refresh_token': str}
        """
        result = load_request_data(LoginSchema, {'email': email, 'password': password})

        user = User.query.filter_by(email=result['email']).first()
        password_hash = user.password_hash if user else self.dummy_hash
        password_ok = self.bcrypt.check_password_hash(password_hash, result['password'])

        # 查無 email / 密碼錯 / 帳號停用 都回同一個錯誤
        if not user or not password_ok or not user.is_active:
            logger.warning("Failed login attempt")
            raise InvalidCredentials()

        access_token = self.tokens.issue_access_token(user)

        user.last_login = utcnow()
        log_activity(user.id, 'login', 'user', user.id)
        # issue_refresh_token 會一起 commit last_login 和 activity log
        refresh_token = self.tokens.issue_refresh_token(user.id)

        logger.info(f"User logged in: {user.id}")

        return {
            'user': user,
            'access_token': access_token,
            'refresh_token': refresh_token
        }

    # ============================================
    # Token verification / refresh
    # ============================================

    def verify_token(self, access_token):
        """驗證 access token, 回傳仍然啟用中的 User"""
        if not access_token:
            raise TokenInvalid('Token is required')

        if self.tokens.is_blacklisted(access_token):
            raise TokenInvalid('Token has been revoked')

        try:
            claims = decode_token(access_token)
        except jwt.ExpiredSignatureError:
            raise TokenExpired()
        except (jwt.InvalidTokenError, JWTExtendedException):
            raise TokenInvalid()

        try:
            user_id = int(claims['sub'])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid('Token subject is malformed')

        user = db.session.get(User, user_id)
        if user is None:
            raise TokenInvalid('Token subject no longer exists')
        if not user.is_active:
            raise UserInactive()

        return user

    def refresh_access_token(self, refresh_token):
        """
        刷新 access token

        舊的 refresh token 會被撤銷並換成新的 (rotation)。

        Returns:
            dict: {'access_token', 'refresh_token', 'user'}
        """
        record = self.tokens.validate_refresh_token(refresh_token)

        user = db.session.get(User, record.user_id)
        if user is None or not user.is_active:
            self.tokens.revoke_refresh_token(refresh_token)
            raise InvalidRefreshToken('Refresh token owner is not active')

        new_refresh_token, _ = self.tokens.rotate_refresh_token(refresh_token)
        access_token = self.tokens.issue_access_token(user)

        logger.info(f"Access token refreshed for user {user.id}")

        return {
            'access_token': access_token,
            'refresh_token': new_refresh_token,
            'user': user
        }

    # ============================================
    # 密碼 / 登出
    # ============================================

    def change_password(self, user_id, current_password, new_password):
        result = load_request_data(ChangePasswordSchema, {
            'current_password': current_password,
            'new_password': new_password
        })

        user = db.session.get(User, user_id)
        if user is None:
            raise NotFound('User not found')

        if not self.bcrypt.check_password_hash(user.password_hash, result['current_password']):
            raise IncorrectPassword()

        self.password_policy.check(result['new_password'], field='new_password')

        user.password_hash = self._hash_password(result['new_password'])
        log_activity(user.id, 'change_password', 'user', user.id)

        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(f"Password changed for user {user.id}")

    def logout(self, access_token=None, refresh_token=None, user_id=None):
        """登出單一 session, 重複呼叫沒關係"""
        if access_token:
            self.tokens.blacklist_access_token(access_token, user_id=user_id)

        if refresh_token:
            self.tokens.revoke_refresh_token(refresh_token, user_id=user_id)

        if user_id is not None:
            log_activity(user_id, 'logout', 'user', user_id)
            db.session.commit()

        logger.info(f"User logged out: {user_id}")

    def logout_all(self, user_id, access_token=None):
        """
        撤銷這個使用者所有的 refresh token

        注意: 只有目前這個 access token 會進黑名單,
        其他已發出去的 access token 要等到自然過期。
        """
        revoked = self.tokens.revoke_all_for_user(user_id)

        if access_token:
            self.tokens.blacklist_access_token(access_token, user_id=user_id)

        log_activity(user_id, 'logout_all', 'user', user_id, details={'revoked_sessions': revoked})
        db.session.commit()

        return revoked
