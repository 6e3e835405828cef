# api/storage.py
"""
R2 upload URLs and deletes
"""

import logging

from flask import Blueprint, request, jsonify, g

from core.errors import BadRequestError
from middleware.security import is_admin, require_auth
from services.r2_storage import R2Storage, validate_bucket_access

storage_bp = Blueprint('storage', __name__)
logger = logging.getLogger(__name__)


@storage_bp.route('/presigned-url', methods=['POST'])
@require_auth
def presigned_url():
    payload = request.get_json(silent=True) or {}
    file_name = payload.get('fileName')
    file_type = payload.get('fileType')
    bucket_type = payload.get('bucket')
    if not file_name or not file_type or not payload.get('fileSize') or not bucket_type:
        raise BadRequestError('Missing required fields')

    user = g.current_user
    validate_bucket_access(bucket_type, user.id, admin=bucket_type == 'admin' and is_admin(user.id))

    upload = R2Storage().presign_upload(file_name, file_type, bucket_type, user.id, payload.get('folder'))
    return jsonify({'success': True, **upload.to_dict()})


@storage_bp.route('/delete', methods=['POST'])
@require_auth
def delete_file():
    payload = request.get_json(silent=True) or {}
    object_key = payload.get('objectKey')
    bucket_type = payload.get('bucket')
    if not object_key or not bucket_type:
        raise BadRequestError('Missing required fields: objectKey, bucket')

    user = g.current_user
    validate_bucket_access(bucket_type, user.id, admin=is_admin(user.id), object_key=object_key)

    R2Storage().delete_object(object_key, bucket_type)
    return jsonify({'success': True, 'message': 'File deleted successfully'})
