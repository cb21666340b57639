# main.py
"""
Library Inventory and Lending Manager
Flask application factory
"""

import os
import sys
import logging
from flask import Flask, jsonify
from flask_login import LoginManager

# Ensure project root is on sys.path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

# --- local modules ---
from config import config
from db_single import get_session, init_database
from models import User
from cli_commands import register_cli_commands
from init_db import run_on_startup


def create_app(config_name=None) -> Flask:
    """Create the library application"""
    config_name = config_name or os.environ.get('FLASK_CONFIG', 'default')
    config_obj = config[config_name]()

    app = Flask(__name__)
    app.config.from_object(config_obj)

    # Logging
    logging.basicConfig(level=getattr(logging, str(config_obj.LOG_LEVEL).upper(), logging.INFO))
    logger = logging.getLogger(__name__)

    # DB init, tables and default administrator
    init_database(config_obj)
    if not run_on_startup():
        logger.warning("[WARNING] Database initialization had issues, continuing with existing state")

    # Flask-Login
    login_manager = LoginManager()
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id: str):
        try:
            s = get_session()
            try:
                return s.get(User, int(user_id))
            finally:
                s.close()
        except Exception as e:
            logger.error(f"user_loader error: {e}")
        return None

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'success': False, 'error': 'Not authorized. You must sign in.', 'code': 'unauthenticated'}), 401

    # CLI
    register_cli_commands(app)

    # Blueprints
    from auth_routes import auth_bp
    from library_routes import library_bp
    app.register_blueprint(auth_bp)
    app.register_blueprint(library_bp)
    logger.info("✅ Library blueprints registered")

    @app.route("/")
    def index():
        return jsonify({'service': 'library', 'status': 'ok'})

    @app.errorhandler(404)
    def nf(_):
        return jsonify({'success': False, 'error': 'Not found', 'code': 'not_found'}), 404

    @app.errorhandler(405)
    def method_not_allowed(_):
        return jsonify({'success': False, 'error': 'Method not allowed', 'code': 'validation_error'}), 405

    @app.errorhandler(500)
    def ie(_):
        return jsonify({'success': False, 'error': 'Internal error', 'code': 'conflict'}), 500

    return app


if __name__ == "__main__":
    create_app().run(debug=True, host="0.0.0.0", port=5000)
