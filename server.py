#!/usr/bin/env python3
"""
HTTP API for docker-updater

Thin adapter around ContainerUpdater.apply_update: a manual trigger, a
registry push webhook and a liveness probe.  Progress of running updates
is broadcast to Socket.IO clients.
"""

import json
import logging
import os
import sys
import traceback
from functools import wraps
from typing import Any, Dict, Optional

import jsonschema
from flask import Flask, Response, jsonify, request
from flask_socketio import SocketIO, emit

from updater import ContainerUpdater, ERR_VALIDATION, __version__, create_updater

app = Flask(__name__)
app.config['SECRET_KEY'] = os.urandom(32).hex()
socketio = SocketIO(app)

# Global variables
updater: Optional[ContainerUpdater] = None
last_result: Optional[Dict[str, Any]] = None

DEFAULT_PORT = 8084

# Registry push notification (Docker Hub webhook format)
PUSH_SCHEMA = {
    "type": "object",
    "properties": {
        "push_data": {
            "type": "object",
            "properties": {
                "tag": {"type": "string"},
                "pushed_at": {"type": "integer"},
                "pusher": {"type": "string"}
            },
            "required": ["tag"]
        },
        "repository": {
            "type": "object",
            "properties": {
                "repo_name": {"type": "string"},
                "is_trusted": {"type": "boolean"}
            },
            "required": ["repo_name"]
        }
    },
    "required": ["push_data", "repository"]
}

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def load_updater() -> bool:
    """Create the updater and its Docker connection."""
    global updater
    config_file = os.environ.get('CONFIG_FILE')
    log_level = os.environ.get('LOG_LEVEL', 'INFO')
    dry_run = os.environ.get('DRY_RUN', 'false').lower() == 'true'

    try:
        updater = create_updater(config_file, log_level, dry_run)
        return True
    except Exception as e:
        logger.error(f"Failed to load updater: {e}")
        return False


def require_updater(f):
    """Decorator to check if updater is loaded before executing route."""
    @wraps(f)
    def decorated(*args, **kwargs):
        if not updater:
            return _error_response('Updater not loaded', 503)
        return f(*args, **kwargs)
    return decorated


def _error_response(message: str, status: int) -> Response:
    """Pretty-printed JSON error; HEAD requests get an empty body."""
    if request.method == 'HEAD':
        return Response(status=status)
    body = json.dumps({'error': message}, indent=2)
    return Response(body, status=status, mimetype='application/json')


@app.errorhandler(Exception)
def handle_exception(e):
    """Turn unexpected errors into a 500 with the error message."""
    status = getattr(e, 'code', None)
    if not isinstance(status, int):
        logger.error(f"Unhandled error: {e}\n{traceback.format_exc()}")
        status = 500
    return _error_response(str(e), status)


def run_update(repository: str, tag: str) -> Response:
    """Apply one update and map its result to an HTTP response."""
    global last_result

    def progress_callback(event_type, data):
        """Emit progress updates to connected clients."""
        socketio.emit('update_progress', {
            'event': event_type,
            'data': data
        }, namespace='/')

    result = updater.apply_update(repository, tag, progress_callback=progress_callback)
    last_result = result.to_dict()
    socketio.emit('update_complete', last_result, namespace='/')

    if result.ok:
        return Response('OK', status=200, mimetype='text/plain')
    status = 400 if result.error_kind == ERR_VALIDATION else 500
    return _error_response(result.error, status)


@app.route('/probe')
def probe():
    """Liveness probe, independent of update state."""
    return Response('OK', status=200, mimetype='text/plain')


@app.route('/api/v1/update', methods=['GET'])
@require_updater
def api_update_manual():
    """Manual trigger: GET /api/v1/update?repo=REPO&tag=TAG"""
    return run_update(request.args.get('repo', ''), request.args.get('tag', ''))


@app.route('/api/v1/update', methods=['POST'])
@require_updater
def api_update_hook():
    """Registry webhook trigger: POST /api/v1/update with a push payload."""
    payload = request.get_json(silent=True)
    if payload is None:
        return _error_response('Request body must be JSON', 400)

    try:
        jsonschema.validate(payload, PUSH_SCHEMA)
    except jsonschema.ValidationError as e:
        return _error_response(f"Invalid push payload: {e.message}", 400)

    return run_update(payload['repository']['repo_name'], payload['push_data']['tag'])


@app.route('/api/v1/status')
def api_status():
    """Get current status."""
    return jsonify({
        'updater_loaded': updater is not None,
        'dry_run': updater.dry_run if updater else None,
        'version': __version__,
        'last_result': last_result,
    })


@socketio.on('connect')
def handle_connect():
    """Handle client connection."""
    emit('connected', {'status': 'Connected to Docker Updater'})
    emit('status_update', {'last_result': last_result})


def main():
    if not load_updater():
        sys.exit(1)

    host = os.environ.get('LISTEN_HOST', '0.0.0.0')
    port = int(os.environ.get('LISTEN_PORT', DEFAULT_PORT))
    logger.info(f"Starting docker-updater API server on {host}:{port}")
    socketio.run(app, host=host, port=port, allow_unsafe_werkzeug=True)


if __name__ == '__main__':
    main()
