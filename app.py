from flask import Flask, request, jsonify
from flask_cors import CORS
from marshmallow import ValidationError as SchemaValidationError
from sqlalchemy import text
from werkzeug.exceptions import HTTPException
from config import get_config
from models import db, utcnow
from errors import ServiceError, InternalError
from extensions import jwt, bcrypt, limiter
import logging
from logging.handlers import RotatingFileHandler
import os

# ============================================
# Logging 設定
# ============================================

def setup_logging(app):
    """
    info 和 error 分開寫檔,用 RotatingFileHandler 避免 log 檔案過大

    debug / testing 模式不寫檔
    """
    if app.debug or app.testing:
        return

    log_dir = app.config.get('LOG_DIR', 'logs')
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
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)

    # 模組 logger (logging.getLogger(__name__)) 也會寫進同一組檔案
    level = getattr(logging, app.config.get('LOG_LEVEL', 'INFO').upper(), logging.INFO)
    for target in (app.logger, logging.getLogger()):
        target.addHandler(info_handler)
        target.addHandler(error_handler)
        target.setLevel(level)

    app.logger.info('Application startup')

# ============================================
# Application factory
# ============================================

def create_app(config_class=None):
    config_class = config_class or get_config()
    config_class.validate()

    app = Flask(__name__)
    app.config.from_object(config_class)

    # 不要用 '*',來源清單從設定讀取
    CORS(app,
         supports_credentials=True,
         origins=app.config['CORS_ORIGINS'],
         methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS'],
         allow_headers=['Content-Type', 'Authorization'])

    db.init_app(app)
    jwt.init_app(app)
    bcrypt.init_app(app)
    app.extensions['bcrypt'] = bcrypt
    limiter.init_app(app)

    setup_logging(app)

    with app.app_context():
        db.create_all()
        app.logger.info('Database tables created')

    register_blueprints(app)
    register_jwt_callbacks(app)
    register_error_handlers(app)
    register_request_hooks(app)
    register_routes(app)

    return app

# ============================================
# 註冊 Blueprints
# ============================================

def register_blueprints(app):
    from auth import auth_bp
    from users import users_bp
    from projects import projects_bp
    from tasks import tasks_bp
    from worklogs import worklogs_bp
    from notifications import notifications_bp

    app.register_blueprint(auth_bp, url_prefix='/auth')
    app.register_blueprint(users_bp, url_prefix='/users')
    app.register_blueprint(projects_bp, url_prefix='/projects')
    app.register_blueprint(tasks_bp, url_prefix='/tasks')
    app.register_blueprint(worklogs_bp, url_prefix='/worklogs')
    app.register_blueprint(notifications_bp, url_prefix='/notifications')

# ============================================
# JWT 錯誤處理
# ============================================

def register_jwt_callbacks(app):

    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        app.logger.warning(f"Expired token attempt from: {request.remote_addr}")
        return jsonify({
            'error': 'token_expired',
            'message': 'The token has expired. Please refresh your token or login again.',
            'status': 401
        }), 401

    @jwt.invalid_token_loader
    def invalid_token_callback(error):
        app.logger.warning(f"Invalid token attempt from: {request.remote_addr}, error: {error}")
        return jsonify({
            'error': 'invalid_token',
            'message': 'Token validation failed. Please provide a valid token.',
            'status': 401
        }), 401

    @jwt.unauthorized_loader
    def unauthorized_callback(error):
        """缺少 token"""
        return jsonify({
            'error': 'authorization_required',
            'message': 'Access token is required. Please provide an authorization token.',
            'status': 401
        }), 401

# ============================================
# 全域錯誤處理
# ============================================

def register_error_handlers(app):

    @app.errorhandler(ServiceError)
    def handle_service_error(error):
        """service 層丟出的錯誤直接轉成 JSON,並放棄這次的 transaction"""
        db.session.rollback()
        return jsonify(error.to_dict()), error.status

    @app.errorhandler(SchemaValidationError)
    def handle_schema_error(error):
        db.session.rollback()
        return jsonify({
            'error': 'validation_error',
            'message': 'Validation failed.',
            'status': 400,
            'details': error.messages
        }), 400

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'error': 'not_found',
            'message': 'The requested resource does not exist',
            'status': 404
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({
            'error': 'method_not_allowed',
            'message': 'The HTTP method is not allowed for this endpoint',
            'status': 405
        }), 405

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        app.logger.warning(f"Rate limit exceeded from: {request.remote_addr}")
        return jsonify({
            'error': 'rate_limit_exceeded',
            'message': 'Too many requests. Please try again later.',
            'status': 429
        }), 429

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        """
        最後的防線

        不洩漏錯誤細節給前端,完整的 stack trace 只寫進 log
        """
        if isinstance(error, HTTPException):
            return jsonify({
                'error': 'http_error',
                'message': error.description,
                'status': error.code
            }), error.code

        db.session.rollback()
        app.logger.error(f"Unexpected error: {str(error)}", exc_info=True)

        return jsonify(InternalError('An internal error occurred.').to_dict()), 500

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

        # security headers
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['X-XSS-Protection'] = '1; mode=block'

        return response

# ============================================
# Health Check / 首頁
# ============================================

def register_routes(app):

    @app.route('/health', methods=['GET'])
    def health_check():
        """給 load balancer 或監控系統用,會實際檢查資料庫連線"""
        try:
            db.session.execute(text('SELECT 1'))
            return jsonify({
                'status': 'healthy',
                'database': 'connected',
                'timestamp': utcnow().isoformat()
            }), 200
        except Exception as e:
            app.logger.error(f"Health check failed: {str(e)}")
            return jsonify({
                'status': 'unhealthy',
                'database': 'disconnected',
                'error': 'Database connection failed'
            }), 503

    @app.route('/')
    def home():
        return jsonify({
            'message': 'Team Task Tracker API',
            'version': app.config.get('API_VERSION'),
            'endpoints': {
                'health': '/health',
                'auth': '/auth',
                'users': '/users',
                'projects': '/projects',
                'tasks': '/tasks',
                'worklogs': '/worklogs',
                'notifications': '/notifications',
            }
        })

# ============================================
# 啟動應用
# ============================================

if __name__ == '__main__':
    # production 請用 gunicorn 或 uwsgi
    app = create_app()
    app.run(
        debug=app.config.get('DEBUG', False),
        port=int(os.getenv('FLASK_PORT', 8888)),
        host='0.0.0.0'
    )
