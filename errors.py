"""
Service 層的錯誤類型

所有業務錯誤都帶有固定的 kind 與訊息,由 app 的 error handler 統一轉成 JSON
"""


class ServiceError(Exception):
    kind = 'service_error'
    status = 400

    def __init__(self, message, kind=None, status=None, **extra):
        super().__init__(message)
        self.message = message
        if kind:
            self.kind = kind
        if status:
            self.status = status
        # 額外要放進回應的欄位,例如 requiresPasswordReset
        self.extra = extra

    def to_dict(self):
        body = {
            'error': self.kind,
            'message': self.message,
            'status': self.status
        }
        body.update(self.extra)
        return body


class ValidationError(ServiceError):
    kind = 'validation_error'
    status = 400


class AuthenticationError(ServiceError):
    kind = 'authentication_error'
    status = 401


class AuthorizationError(ServiceError):
    kind = 'authorization_error'
    status = 403


class NotFoundError(ServiceError):
    kind = 'not_found'
    status = 404


class StateError(ServiceError):
    kind = 'state_error'
    status = 409


class DependencyError(ServiceError):
    """通知或寄信失敗,只在 dispatcher 內部使用,不會回給前端"""
    kind = 'dependency_error'
    status = 502


class InternalError(ServiceError):
    kind = 'internal_error'
    status = 500
