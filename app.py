from flask import Flask, request, jsonify, current_app
from sqlalchemy import text
from werkzeug.exceptions import HTTPException
from config import get_config
from models import db, User, utcnow
from extensions import jwt, bcrypt, cors, limiter, get_token_service
from errors import APIError, AuthenticationFailed
from token_service import TokenService
from auth_service import AuthService, PasswordPolicy
import logging
from logging.handlers import RotatingFileHandler
import os


# ============================================
# Logging 設定
# ============================================

def setup_logging(app):
    """
    設定 logging (debug / testing 不寫檔)

    改進點:
    1. app.log 記 INFO 以上, error.log 只記錯誤
    2. handler 掛在 root logger, 各模組的 logger 都會寫進同一組檔案
    3. RotatingFileHandler 控制檔案大小
    """
    if app.debug or app.testing:
        return

    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )

    info_handler = RotatingFileHandler(
        os.path.join(log_dir, 'app.log'),
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    info_handler.setLevel(logging.INFO)
    info_handler.setFormatter(formatter)

    error_handler = RotatingFileHandler(
        os.path.join(log_dir, 'error.log'),
        maxBytes=10240000,
        backupCount=10
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.addHandler(info_handler)
    root.addHandler(error_handler)
    root.setLevel(app.config['LOG_LEVEL'])

    app.logger.info('Application startup')


# ============================================
# JWT 錯誤處理
# ============================================

def _unauthorized(message):
    return jsonify({'success': False, 'message': message}), 401


@jwt.token_in_blocklist_loader
def check_if_token_revoked(jwt_header, jwt_payload):
    jti = jwt_payload.get('jti')
    return jti is None or get_token_service().is_jti_blacklisted(jti)


@jwt.user_lookup_loader
def load_user(jwt_header, jwt_data):
    """token 對應的啟用中使用者, 找不到回 None (交給 error loader 回 401)"""
    try:
        user_id = int(jwt_data['sub'])
    except (KeyError, TypeError, ValueError):
        return None
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        return None
    return user


@jwt.user_lookup_error_loader
def user_lookup_error_callback(jwt_header, jwt_data):
    current_app.logger.warning(f"Token for missing or inactive user from: {request.remote_addr}")
    return _unauthorized(AuthenticationFailed.public_message)


@jwt.expired_token_loader
def expired_token_callback(jwt_header, jwt_payload):
    current_app.logger.warning(f"Expired token attempt from: {request.remote_addr}")
    return _unauthorized('The token has expired. Please refresh your token or login again.')


@jwt.invalid_token_loader
def invalid_token_callback(error):
    current_app.logger.warning(f"Invalid token attempt from: {request.remote_addr}, error: {error}")
    return _unauthorized(AuthenticationFailed.public_message)


@jwt.unauthorized_loader
def unauthorized_callback(error):
    current_app.logger.warning(f"Unauthorized access attempt from: {request.remote_addr}")
    return _unauthorized('Access token is required. Please provide an authorization token.')


@jwt.revoked_token_loader
def revoked_token_callback(jwt_header, jwt_payload):
    return _unauthorized('The token has been revoked. Please login again.')


# ============================================
# 全域錯誤處理
# ============================================

def register_error_handlers(app):

    @app.errorhandler(APIError)
    def handle_api_error(error):
        if error.status_code >= 500:
            db.session.rollback()
            app.logger.error(f"API error: {error.message}", exc_info=True)
        elif isinstance(error, AuthenticationFailed):
            # 真正原因只記在 log, 前端只看到通用訊息
            app.logger.warning(f"Authentication failed ({error.message}) from: {request.remote_addr}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(400)
    def bad_request(error):
        return jsonify({
            'success': False,
            'message': 'The request is malformed or invalid'
        }), 400

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'success': False,
            'message': 'The requested resource does not exist'
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({
            'success': False,
            'message': 'The HTTP method is not allowed for this endpoint'
        }), 405

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        app.logger.warning(f"Rate limit exceeded from: {request.remote_addr}")
        return jsonify({
            'success': False,
            'message': 'Too many requests. Please try again later.'
        }), 429

    @app.errorhandler(500)
    def internal_server_error(error):
        db.session.rollback()
        app.logger.error(f"Internal server error: {str(error)}", exc_info=True)
        return jsonify({
            'success': False,
            'message': 'An internal error occurred. Please try again later.'
        }), 500

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        """最後一道防線: rollback, 記錄完整錯誤, 只回通用的 500 訊息"""
        if isinstance(error, HTTPException):
            return jsonify({'success': False, 'message': error.description}), error.code

        db.session.rollback()
        app.logger.error(f"Unexpected error: {str(error)}", exc_info=True)

        return jsonify({
            'success': False,
            'message': 'An unexpected error occurred. Please try again later.'
        }), 500


# ============================================
# Request/Response Logging
# ============================================

def register_request_hooks(app):

    @app.before_request
    def log_request():
        if not app.debug:
            app.logger.info(f"Request: {request.method} {request.path} from {request.remote_addr}")

    @app.after_request
    def log_response(response):
        if not app.debug:
            app.logger.info(f"Response: {response.status_code} for {request.method} {request.path}")

        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['X-XSS-Protection'] = '1; mode=block'

        return response


# ============================================
# 註冊 Blueprints
# ============================================

def register_blueprints(app):
    from auth import auth_bp
    from users import users_bp
    from roles import roles_bp
    from projects import projects_bp
    from tasks import tasks_bp
    from dashboard import dashboard_bp
    from activity import activity_bp

    app.register_blueprint(auth_bp, url_prefix='/auth')
    app.register_blueprint(users_bp, url_prefix='/users')
    app.register_blueprint(roles_bp)
    app.register_blueprint(projects_bp, url_prefix='/projects')
    app.register_blueprint(tasks_bp)
    app.register_blueprint(dashboard_bp, url_prefix='/dashboard')
    app.register_blueprint(activity_bp, url_prefix='/activity')

    @app.route('/health', methods=['GET'])
    @limiter.exempt
    def health_check():
        """Health check (給 load balancer / 監控用)"""
        try:
            db.session.execute(text('SELECT 1'))

            return jsonify({
                'status': 'healthy',
                'database': 'connected',
                'timestamp': utcnow().isoformat()
            }), 200
        except Exception as e:
            db.session.rollback()
            app.logger.error(f"Health check failed: {str(e)}")
            return jsonify({
                'status': 'unhealthy',
                'database': 'disconnected',
                'error': 'Database connection failed'
            }), 503

    @app.route('/')
    @limiter.limit("10 per minute")
    def home():
        return jsonify({
            'message': 'Project Tracker API',
            'version': app.config['API_VERSION'],
            'endpoints': {
                'health': {'path': '/health', 'methods': ['GET']},
                'auth': {
                    'register': {'path': '/auth/register', 'methods': ['POST']},
                    'login': {'path': '/auth/login', 'methods': ['POST']},
                    'verify': {'path': '/auth/verify', 'methods': ['GET']},
                    'refresh': {'path': '/auth/refresh-token', 'methods': ['POST']},
                    'change_password': {'path': '/auth/change-password', 'methods': ['PUT']},
                    'logout': {'path': '/auth/logout', 'methods': ['POST']},
                    'logout_all': {'path': '/auth/logout-all', 'methods': ['POST']},
                    'profile': {'path': '/auth/profile', 'methods': ['GET', 'PATCH']}
                },
                'users': {
                    'list': {'path': '/users', 'methods': ['GET']},
                    'detail': {'path': '/users/:id', 'methods': ['GET', 'PATCH']},
                    'status': {'path': '/users/:id/status', 'methods': ['PATCH']},
                    'roles': {'path': '/users/:id/roles', 'methods': ['GET', 'POST']},
                    'stats': {'path': '/users/stats', 'methods': ['GET']}
                },
                'roles': {'path': '/roles', 'methods': ['GET']},
                'projects': {
                    'list': {'path': '/projects', 'methods': ['GET', 'POST']},
                    'detail': {'path': '/projects/:id', 'methods': ['GET', 'PATCH', 'DELETE']},
                    'status': {'path': '/projects/:id/status', 'methods': ['PATCH']},
                    'responsibles': {'path': '/projects/:id/responsibles', 'methods': ['GET', 'POST']}
                },
                'tasks': {
                    'list': {'path': '/projects/:id/tasks', 'methods': ['GET', 'POST']},
                    'my_tasks': {'path': '/tasks/my', 'methods': ['GET']},
                    'detail': {'path': '/tasks/:id', 'methods': ['GET', 'PATCH', 'DELETE']},
                    'status': {'path': '/tasks/:id/status', 'methods': ['PATCH']}
                },
                'dashboard': {'path': '/dashboard/summary', 'methods': ['GET']},
                'activity': {'path': '/activity', 'methods': ['GET']}
            },
            'rate_limits': {
                'default': app.config['RATELIMIT_DEFAULT'],
                'auth': {
                    'register': app.config['REGISTER_RATE_LIMIT'],
                    'login': app.config['LOGIN_RATE_LIMIT']
                }
            }
        })

    if app.debug:
        @app.route('/debug/routes')
        def debug_routes():
            """列出所有 routes (僅限開發環境)"""
            routes = []
            for rule in app.url_map.iter_rules():
                routes.append({
                    'endpoint': rule.endpoint,
                    'methods': sorted(rule.methods),
                    'path': str(rule)
                })
            return jsonify({'routes': routes})


# ============================================
# Application factory
# ============================================

def create_app(config_class=None):
    """
    建立 Flask app

    測試時可以傳入 TestingConfig; 沒傳就依 FLASK_ENV 決定。
    """
    config_class = config_class or get_config()
    config_class.validate()

    app = Flask(__name__)
    app.config.from_object(config_class)

    setup_logging(app)

    db.init_app(app)
    jwt.init_app(app)
    bcrypt.init_app(app)
    limiter.init_app(app)
    cors.init_app(
        app,
        supports_credentials=True,
        origins=app.config['CORS_ORIGINS'],
        methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS'],
        allow_headers=['Content-Type', 'Authorization']
    )

    token_service = TokenService.from_config(app.config)
    app.extensions['token_service'] = token_service
    app.extensions['auth_service'] = AuthService(
        bcrypt,
        token_service,
        PasswordPolicy.from_config(app.config)
    )

    register_error_handlers(app)
    register_request_hooks(app)
    register_blueprints(app)

    from cli import register_commands
    register_commands(app)

    with app.app_context():
        from roles import seed_roles
        db.create_all()
        seed_roles()
        app.logger.info('Database tables created')

    return app


if __name__ == '__main__':
    # production 請用 gunicorn 或 uwsgi, 不要用內建 server
    application = create_app()

    debug_mode = os.getenv('FLASK_DEBUG', 'False').lower() == 'true'
    port = int(os.getenv('FLASK_PORT', 8888))

    application.run(
        debug=debug_mode,
        port=port,
        host='0.0.0.0'
    )
