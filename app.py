"""
Sophia - real-estate agent assistant API
Main application entry point
"""
import os
from flask import Flask, jsonify
from utils.logger import setup_logger
from utils.errors import ApiError
from config import Config, config
from routes.health_routes import health_bp
from routes.auth_routes import auth_bp
from routes.admin_routes import admin_bp
from routes.agent_routes import agents_bp
from routes.calculator_routes import calculators_bp
from routes.document_routes import documents_bp
from routes.webhook_routes import webhook_bp


def create_app(config_name=None):
    """
    Application factory pattern for creating Flask app

    Args:
        config_name: Configuration name (development, production, testing)

    Returns:
        Configured Flask application
    """
    # Create Flask app
    app = Flask(__name__)

    # Setup logging
    logger = setup_logger(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'production')

    app.config.from_object(config.get(config_name, config['default']))

    # Validate configuration
    try:
        Config.validate_config()
        logger.info("Configuration validated successfully")
    except ValueError as e:
        logger.warning(f"Configuration validation failed: {e}")

    # Register blueprints
    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(agents_bp)
    app.register_blueprint(calculators_bp)
    app.register_blueprint(documents_bp)
    app.register_blueprint(webhook_bp)

    # Error handlers
    @app.errorhandler(ApiError)
    def api_error(error):
        if error.status_code >= 500:
            logger.error(f"API error {error.status_code}: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(404)
    def not_found(error):
        return {'success': False, 'error': 'Endpoint not found'}, 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return {'success': False, 'error': 'Method not allowed'}, 405

    @app.errorhandler(500)
    def internal_error(error):
        logger.error(f"Internal server error: {error}")
        return {'success': False, 'error': 'Internal server error'}, 500

    @app.errorhandler(413)
    def too_large(error):
        return {'success': False, 'error': 'Request too large'}, 413

    logger.info(f"Application created with {config_name} configuration")
    return app

# Create the application instance
app = create_app()

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=Config.DEBUG)
