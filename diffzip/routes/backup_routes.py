"""
Backup routes - run passes and report progress.
"""

import logging
from flask import Blueprint, current_app, jsonify, request

from diffzip.scheduler import run_backup, trigger_backup_now
from diffzip.settings import AutoBackupType, SettingsError


bp = Blueprint('backup', __name__, url_prefix='/api/backup')
logger = logging.getLogger(__name__)


@bp.route('/run', methods=['POST'])
def run_backup_now():
    """
    Queue a backup run.

    Request body:
        - type: 'full', 'only-new' or 'only-new-and-existing' (default: full)

    Returns:
        JSON with a queued message, or the result when no scheduler runs
        in this process
    """
    data = request.get_json(silent=True) or {}

    try:
        backup_type = AutoBackupType.parse(data.get('type'))
    except SettingsError as e:
        return jsonify({'error': str(e)}), 400

    try:
        trigger_backup_now(backup_type)
        return jsonify({
            'message': f"Backup ({backup_type.value}) has been queued for immediate execution"
        }), 202
    except RuntimeError:
        # No scheduler in this process, run inline
        logger.info("Scheduler not available, running backup inline")

    result = run_backup(current_app._get_current_object(), backup_type)
    status_code = 200 if result.status == 'success' else 500
    return jsonify(result.to_dict()), status_code


@bp.route('/status', methods=['GET'])
def backup_status():
    """
    Get the latest progress event per key and the last backup result.

    Returns:
        JSON with progress events and last result
    """
    state = current_app.extensions['diffzip']
    last_result = state['last_result']
    return jsonify({
        'progress': state['progress'].snapshot(),
        'last_result': last_result.to_dict() if last_result else None,
    })
