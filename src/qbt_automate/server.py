"""
HTTP API Server - Flask application in front of the rule scheduler

Provides REST API for:
- Manual "apply now" triggers per instance
- Scheduler status and recent activity
- Delete previews
- Health checks
- Authentication via API key
"""

import os
import secrets
import logging
from datetime import datetime, timezone
from functools import wraps

from flask import Flask, request, jsonify

from qbt_automate.activity import ActivityRecorder, MAX_LIST_LIMIT
from qbt_automate.errors import UnknownInstanceError
from qbt_automate.logging import get_logger
from qbt_automate.scheduler import RuleScheduler
from qbt_automate.__version__ import __version__

logger = get_logger(__name__)

# Global references (set by create_app)
scheduler: RuleScheduler = None
recorder: ActivityRecorder = None
api_key_config: str = None


def create_app(scheduler_instance: RuleScheduler, recorder_instance: ActivityRecorder, api_key: str) -> Flask:
    """
    Create and configure Flask application

    Args:
        scheduler_instance: Rule scheduler
        recorder_instance: Activity recorder
        api_key: API authentication key

    Returns:
        Configured Flask app
    """
    global scheduler, recorder, api_key_config

    scheduler = scheduler_instance
    recorder = recorder_instance
    api_key_config = api_key

    app = Flask(__name__)
    app.json.sort_keys = False

    # Use our configured logger instead of Flask's
    app.logger.disabled = True
    logging.getLogger('werkzeug').setLevel(logging.WARNING)

    register_routes(app)

    logger.info("Flask application created")
    return app


def require_api_key(f):
    """
    Decorator for endpoints requiring API key authentication

    Checks for API key in:
    1. Query parameter: ?key=xxx
    2. Header: X-API-Key: xxx

    Returns 401 if missing or invalid.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        key = request.args.get('key') or request.headers.get('X-API-Key')

        # Constant-time comparison
        if not key or not api_key_config or not secrets.compare_digest(key, api_key_config):
            return jsonify({
                'error': 'Unauthorized',
                'message': 'Invalid or missing API key'
            }), 401

        return f(*args, **kwargs)

    return decorated_function


def _int_arg(name: str, default: int, minimum: int = 0) -> int:
    try:
        return max(int(request.args.get(name, default)), minimum)
    except (TypeError, ValueError):
        raise ValueError(f"Query parameter '{name}' must be an integer")


def register_routes(app: Flask):
    """Register all API routes"""

    @app.route('/api/instances/<instance_id>/apply', methods=['POST'])
    @require_api_key
    def apply_now(instance_id: str):
        """
        Trigger an immediate cycle for an instance

        Returns:
            202: Trigger queued
            404: Unknown instance
            401: Unauthorized
        """
        try:
            scheduler.trigger(instance_id)
        except UnknownInstanceError as e:
            return jsonify({
                'error': 'Not Found',
                'message': e.message
            }), 404

        return jsonify({
            'instance_id': instance_id,
            'status': 'queued',
            'queued_at': datetime.now(timezone.utc).isoformat()
        }), 202

    @app.route('/api/instances/<instance_id>/rules/<rule_id>/preview', methods=['GET'])
    @require_api_key
    def preview(instance_id: str, rule_id: str):
        """
        Delete preview for one rule

        Query Parameters:
            limit (optional): Page size (default: 25, max: 500)
            offset (optional): Page offset (default: 0)

        Returns:
            200: Preview
            400: Not a delete rule / bad parameters
            404: Unknown instance or rule
        """
        try:
            limit = min(_int_arg('limit', 25, minimum=1), MAX_LIST_LIMIT)
            offset = _int_arg('offset', 0)
        except ValueError as e:
            return jsonify({'error': 'Bad Request', 'message': str(e)}), 400

        try:
            result = scheduler.preview_delete(instance_id, rule_id, limit=limit, offset=offset)
        except UnknownInstanceError as e:
            return jsonify({'error': 'Not Found', 'message': e.message}), 404
        except KeyError as e:
            return jsonify({'error': 'Not Found', 'message': str(e.args[0])}), 404
        except ValueError as e:
            return jsonify({'error': 'Bad Request', 'message': str(e)}), 400

        return jsonify(result.to_dict()), 200

    @app.route('/api/status', methods=['GET'])
    @require_api_key
    def status():
        """
        Scheduler status with the last cycle result per instance

        Returns:
            200: Status
            401: Unauthorized
        """
        data = scheduler.get_status()
        data['timestamp'] = datetime.now(timezone.utc).isoformat()
        return jsonify(data), 200

    @app.route('/api/activity', methods=['GET'])
    @require_api_key
    def activity():
        """
        Recent activity, newest first

        Query Parameters:
            limit (optional): Max results (default: 50, max: 500)
            offset (optional): Pagination offset (default: 0)
            instance (optional): Only events of this instance

        Returns:
            200: Events
            400: Bad parameters
            401: Unauthorized
        """
        try:
            limit = min(_int_arg('limit', 50, minimum=1), MAX_LIST_LIMIT)
            offset = _int_arg('offset', 0)
        except ValueError as e:
            return jsonify({'error': 'Bad Request', 'message': str(e)}), 400

        instance_id = request.args.get('instance') or None
        events = recorder.list_events(limit=limit, offset=offset, instance_id=instance_id)

        return jsonify({
            'total': recorder.store.count(instance_id),
            'limit': limit,
            'offset': offset,
            'events': [event.to_dict() for event in events]
        }), 200

    @app.route('/api/health', methods=['GET'])
    def health():
        """
        Health check endpoint (no authentication required)

        Returns:
            200: Service healthy
            503: Scheduler thread not running
        """
        if not scheduler.is_alive():
            return jsonify({
                'status': 'unhealthy',
                'errors': ['Scheduler thread not running'],
                'timestamp': datetime.now(timezone.utc).isoformat()
            }), 503

        return jsonify({
            'status': 'healthy',
            'version': __version__,
            'instances': sorted(scheduler.instances),
            'timestamp': datetime.now(timezone.utc).isoformat()
        }), 200

    @app.route('/api/version', methods=['GET'])
    def version():
        """Version information (no authentication required)"""
        return jsonify({
            'version': __version__,
            'api_version': '1.0',
            'python_version': os.sys.version.split()[0]
        }), 200

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'error': 'Not Found',
            'message': 'Endpoint not found'
        }), 404

    @app.errorhandler(500)
    def internal_error(error):
        logger.error(f"Internal server error: {error}", exc_info=True)
        return jsonify({
            'error': 'Internal Server Error',
            'message': 'An unexpected error occurred'
        }), 500


def run_server(
    app: Flask,
    host: str = '0.0.0.0',
    port: int = 5000,
    log_http_access: bool = False
):
    """
    Run Flask app with Gunicorn

    One worker process with threads: scheduler state (debounce, last runs,
    per-instance locks) lives in-process and must not be split across forks.

    Args:
        app: Flask application
        host: Bind address
        port: Bind port
        log_http_access: Enable HTTP access logging (default: False to suppress health checks)
    """
    from gunicorn.app.base import BaseApplication
    from gunicorn.glogging import Logger

    class FilteredLogger(Logger):
        """Gunicorn logger that drops /api/health access lines"""

        def access(self, resp, req, environ, request_time):
            if not log_http_access and environ.get('PATH_INFO') == '/api/health':
                return
            super().access(resp, req, environ, request_time)

    class StandaloneApplication(BaseApplication):
        def __init__(self, app, options=None):
            self.application = app
            self.options = options or {}
            super().__init__()

        def load_config(self):
            for key, value in self.options.items():
                if key in self.cfg.settings and value is not None:
                    self.cfg.set(key, value)

        def load(self):
            return self.application

    def post_fork(server, worker_process):
        """Threads don't survive the fork: start the scheduler in the worker"""
        from qbt_automate.server import scheduler as scheduler_instance

        logger.info(f"Gunicorn worker {worker_process.pid} forked - starting scheduler thread")
        scheduler_instance.start()

    options = {
        'bind': f'{host}:{port}',
        'workers': 1,
        'threads': 4,
        'worker_class': 'gthread',
        'timeout': 120,
        'accesslog': '-',
        'errorlog': '-',
        'loglevel': 'warning',
        'logger_class': FilteredLogger,
        'preload_app': True,
        'post_fork': post_fork,
    }

    logger.info(f"Starting Gunicorn server on {host}:{port}")

    StandaloneApplication(app, options).run()
