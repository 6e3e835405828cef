# api/coupons.py
from flask import Blueprint, request, jsonify

from services.coupons import CouponRejected, validate_for_checkout

coupons_bp = Blueprint('coupons', __name__)


@coupons_bp.route('/validate', methods=['POST'])
def validate():
    """Checkout coupon check; rejections are reported in the body with HTTP 200"""
    payload = request.get_json(silent=True) or {}
    try:
        coupon = validate_for_checkout(payload.get('couponCode'), payload.get('productIds'))
    except CouponRejected as e:
        return jsonify({'success': False, 'error': e.message})
    return jsonify({'coupon': coupon})
