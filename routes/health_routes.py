"""
Health and metrics route handlers
"""
from flask import Blueprint, jsonify, request
from datetime import datetime, timezone
from utils.logger import get_logger
from config import Config
from services.metrics_service import get_metrics_service

logger = get_logger(__name__)

# Create blueprint
health_bp = Blueprint('health', __name__, url_prefix='/api')


def format_uptime(ms: int) -> str:
    """Human-readable uptime, e.g. 2d 3h 4m"""
    seconds = ms // 1000
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24

    if days > 0:
        return f"{days}d {hours % 24}h {minutes % 60}m"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


@health_bp.route('/health', methods=['GET'])
def health_check():
    """Basic health check, ?detailed=true adds the metrics snapshot"""
    try:
        snapshot = get_metrics_service().get_metrics_snapshot()

        if request.args.get('detailed') == 'true':
            return jsonify({
                'status': 'healthy',
                **snapshot,
                'uptime': format_uptime(snapshot['uptime']),
                'uptimeMs': snapshot['uptime'],
                'environment': Config.FLASK_ENV,
                'version': Config.APP_VERSION,
            }), 200

        return jsonify({
            'status': 'healthy',
            'timestamp': snapshot['timestamp'],
            'uptime': format_uptime(snapshot['uptime']),
            'uptimeMs': snapshot['uptime'],
            'environment': Config.FLASK_ENV,
            'version': Config.APP_VERSION,
        }), 200

    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return jsonify({
            'status': 'unhealthy',
            'error': str(e),
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }), 500
