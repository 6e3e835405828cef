# api/accounts.py
from flask import Blueprint, request, jsonify, g

from middleware.security import optional_auth
from services.usernames import check_username

accounts_bp = Blueprint('accounts', __name__)


@accounts_bp.route('/check-username', methods=['POST'])
@optional_auth
def check_username_availability():
    username = (request.get_json(silent=True) or {}).get('username')
    if not username or not isinstance(username, str):
        return jsonify({'available': False, 'error': 'Username is required'}), 400

    current_user_id = g.current_user.id if g.current_user else None
    return jsonify(check_username(username, current_user_id).to_dict())
