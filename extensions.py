"""
Flask 擴展實例

在 app factory 裡用 init_app 綁定
"""
from flask_bcrypt import Bcrypt
from flask_jwt_extended import JWTManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

jwt = JWTManager()
bcrypt = Bcrypt()

# 限制值從 app.config 的 RATELIMIT_* 讀取
limiter = Limiter(key_func=get_remote_address)
