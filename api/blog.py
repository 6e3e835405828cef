# api/blog.py
from flask import Blueprint, request, jsonify

from core.errors import BadRequestError
from middleware.security import require_admin
from services.blog_import import import_posts, preview

blog_bp = Blueprint('blog', __name__)


@blog_bp.route('/import-wordpress', methods=['POST'])
@require_admin
def import_wordpress():
    """
    Preview or import a WordPress WXR export

    Body: ``{xmlContent, action: preview|import, dryRun}``
    """
    payload = request.get_json(silent=True) or {}
    xml_content = payload.get('xmlContent')
    if not xml_content:
        raise BadRequestError('XML content is required')

    if (payload.get('action') or 'import') == 'preview':
        return jsonify(preview(xml_content))
    return jsonify(import_posts(xml_content, dry_run=payload.get('dryRun') is True))
