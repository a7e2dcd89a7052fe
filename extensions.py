"""
Flask extensions

在這裡建立 (還沒綁 app), create_app() 裡再 init_app;
blueprint 直接 import 這些物件, 不用去 app 模組拿 global。
"""
from flask import current_app
from flask_bcrypt import Bcrypt
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

jwt = JWTManager()
bcrypt = Bcrypt()
cors = CORS()
limiter = Limiter(key_func=get_remote_address)


def get_token_service():
    """目前 app 的 TokenService"""
    return current_app.extensions['token_service']


def get_auth_service():
    """目前 app 的 AuthService"""
    return current_app.extensions['auth_service']
