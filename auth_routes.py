"""
Authentication Routes
Session issuance for staff accounts through Flask-Login
"""

from flask import Blueprint, request, jsonify
from flask_login import login_user, logout_user, current_user
import logging

from db_single import get_session
from user_helpers import authenticate

logger = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__, url_prefix='/api/auth')


@auth_bp.route('/login', methods=['POST'])
def login():
    """Start a session from email and password"""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = request.form.to_dict()
    email = (data.get('email') or '').strip()
    password = data.get('password') or ''

    if not email or not password:
        return jsonify({'success': False, 'error': 'Email and password are required', 'code': 'validation_error'}), 400

    session_db = get_session()
    try:
        user = authenticate(session_db, email, password)
        if not user:
            logger.warning(f"Failed login for {email}")
            return jsonify({'success': False, 'error': 'Invalid email or password', 'code': 'unauthenticated'}), 401

        login_user(user)
        logger.info(f"User logged in: user_id={user.id}")
        return jsonify({'success': True, 'data': user.to_dict()})
    finally:
        session_db.close()


@auth_bp.route('/logout', methods=['POST'])
def logout():
    if current_user.is_authenticated:
        logger.info(f"User logged out: user_id={current_user.id}")
    logout_user()
    return jsonify({'success': True, 'data': None})


@auth_bp.route('/me', methods=['GET'])
def me():
    if not current_user.is_authenticated:
        return jsonify({'success': False, 'error': 'Not authorized. You must sign in.', 'code': 'unauthenticated'}), 401
    return jsonify({'success': True, 'data': current_user.to_dict()})
