"""
共用的輸入驗證工具 (marshmallow)
"""
from datetime import datetime, timezone
from flask import request, current_app
from marshmallow import Schema, fields, validate, RAISE, EXCLUDE
from marshmallow import ValidationError as SchemaValidationError

from errors import ValidationError

# ============================================
# 自訂欄位
# ============================================

class DateOrDateTime(fields.DateTime):
    """接受 '2025-01-01' 或完整的 ISO datetime,一律轉成 naive UTC"""

    def _deserialize(self, value, attr, data, **kwargs):
        if isinstance(value, str) and len(value) == 10:
            try:
                return datetime.strptime(value, '%Y-%m-%d')
            except ValueError:
                raise self.make_error('invalid', input=value, obj_type=self.OBJ_TYPE)
        result = super()._deserialize(value, attr, data, **kwargs)
        if result.tzinfo is not None:
            result = result.astimezone(timezone.utc).replace(tzinfo=None)
        return result


class BaseSchema(Schema):
    """多帶未宣告的欄位直接拒絕"""

    class Meta:
        unknown = RAISE


class PaginationSchema(Schema):
    page = fields.Int(load_default=1, validate=validate.Range(min=1))
    limit = fields.Int(load_default=None, validate=validate.Range(min=1))

    class Meta:
        unknown = EXCLUDE

# ============================================
# Helper Functions
# ============================================

def validate_request_data(schema_class, data, partial=False):
    """
    統一的輸入驗證函數

    Returns:
        tuple: (is_valid, data_or_errors)
    """
    schema = schema_class()
    try:
        validated_data = schema.load(data, partial=partial)
        return True, validated_data
    except SchemaValidationError as err:
        return False, err.messages


def load_json(schema_class, partial=False):
    """讀取 JSON body 並驗證,失敗時丟 ValidationError (附欄位錯誤)"""
    data = request.get_json(silent=True)
    if data is None or not isinstance(data, dict):
        raise ValidationError('Request body must be JSON.')

    is_valid, result = validate_request_data(schema_class, data, partial=partial)
    if not is_valid:
        raise ValidationError('Validation failed.', details=result)
    return result


def load_args(schema_class):
    """驗證 query string"""
    is_valid, result = validate_request_data(schema_class, request.args.to_dict())
    if not is_valid:
        raise ValidationError('Invalid query parameters.', details=result)
    return result


def get_pagination():
    """
    Returns:
        tuple: (page, limit)
    """
    args = load_args(PaginationSchema)
    default_size = current_app.config.get('DEFAULT_PAGE_SIZE', 20)
    max_size = current_app.config.get('MAX_PAGE_SIZE', 100)
    limit = min(args['limit'] or default_size, max_size)
    return args['page'], limit


def pagination_meta(paginated, page, limit):
    return {
        'page': page,
        'limit': limit,
        'total': paginated.total,
        'totalPages': paginated.pages,
    }


def iso(value):
    return value.isoformat() if value else None
