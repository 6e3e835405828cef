# api/sitemap.py
import logging

from flask import Blueprint, Response, jsonify, current_app

from services.sitemap import render_sitemap

sitemap_bp = Blueprint('sitemap', __name__)
logger = logging.getLogger(__name__)


@sitemap_bp.route('/sitemap.xml', methods=['GET'])
def sitemap():
    try:
        xml = render_sitemap(current_app.config['SITEMAP_HOST'])
    except Exception as e:
        logger.error(f"Sitemap generation failed: {e}", exc_info=True)
        return jsonify({'error': 'Failed to generate sitemap'}), 500

    return Response(xml, mimetype='application/xml', headers={'Cache-Control': 'public, max-age=3600'})
