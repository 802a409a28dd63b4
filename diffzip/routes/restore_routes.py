"""
Restore routes - browse backed-up files and restore them.
"""

import logging
from flask import Blueprint, current_app, jsonify, request

from diffzip.backup.restore import (
    FolderBrowser,
    RestoreError,
    RestoreMethod,
    create_restore_executor,
    list_selectors,
)
from diffzip.models import LATEST, from_iso
from diffzip.settings import BackupSettings


bp = Blueprint('restore', __name__, url_prefix='/api/restore')
logger = logging.getLogger(__name__)


def _executor():
    state = current_app.extensions['diffzip']
    settings = BackupSettings.from_config(current_app.config)
    return create_restore_executor(settings, state['vault'], progress=state['progress'])


def _parse_cutoff(value) -> int:
    """Accept epoch milliseconds, an ISO timestamp, or null/'latest'."""
    if value is None or value == 'latest':
        return LATEST
    if isinstance(value, (int, float)):
        return int(value)
    return from_iso(str(value))


def _plan_options(data: dict) -> dict:
    return {
        'only_new': bool(data.get('only_new', False)),
        'skip_deleted': bool(data.get('skip_deleted', True)),
        'prefix': data.get('prefix') or '',
    }


@bp.route('/files', methods=['GET'])
def list_files():
    """
    Get every tracked file with its revisions, most recently modified first.

    Returns:
        JSON with files and restore selectors
    """
    try:
        history = _executor().history
    except RestoreError as e:
        return jsonify({'error': str(e)}), 500

    records = sorted(history.items(), key=lambda item: item[1].mtime, reverse=True)
    files = []
    for path, record in records:
        files.append({
            'path': path,
            'digest': record.digest,
            'mtime': record.mtime,
            'missing': record.missing,
            'history': [e.to_dict() for e in reversed(record.history)],
        })

    return jsonify({'files': files, 'selectors': list_selectors(history)})


@bp.route('/file', methods=['POST'])
def restore_file():
    """
    Restore one revision of one file.

    Request body:
        - path: Tracked path (required)
        - archive_name: Archive holding the revision (required)
        - method: 'overwrite', 'restore-folder' or 'suffix' (default: restore-folder)

    Returns:
        JSON with the path written
    """
    data = request.get_json(silent=True) or {}

    if not data.get('path'):
        return jsonify({'error': 'path is required'}), 400
    if not data.get('archive_name'):
        return jsonify({'error': 'archive_name is required'}), 400

    try:
        method = RestoreMethod(data.get('method', RestoreMethod.RESTORE_FOLDER.value))
    except ValueError:
        return jsonify({'error': f"Invalid method. Valid options: {[m.value for m in RestoreMethod]}"}), 400

    try:
        restored_as = _executor().restore_revision(data['path'], data['archive_name'], method)
    except RestoreError as e:
        return jsonify({'error': str(e)}), 400

    return jsonify({'restored_as': restored_as, 'message': f"{restored_as} has been restored"})


@bp.route('/plan', methods=['POST'])
def plan_restore():
    """
    Work out a vault restore without changing anything.

    Request body:
        - selectors: {path or 'dir/*' or '*': cutoff} (required)
        - only_new, skip_deleted, prefix: restore options

    Returns:
        JSON restore plan
    """
    data = request.get_json(silent=True) or {}
    selectors = data.get('selectors')
    if not isinstance(selectors, dict) or not selectors:
        return jsonify({'error': 'selectors is required'}), 400

    try:
        cutoffs = {k: _parse_cutoff(v) for k, v in selectors.items()}
        plan = _executor().plan_vault_restore(cutoffs, **_plan_options(data))
    except ValueError as e:
        return jsonify({'error': f'Invalid cutoff: {e}'}), 400
    except RestoreError as e:
        return jsonify({'error': str(e)}), 500

    return jsonify(plan.to_dict())


def _run_plan(executor, plan, confirmed: bool):
    if not confirmed:
        body = plan.to_dict()
        body['error'] = 'Restore must be confirmed'
        return jsonify(body), 409

    result = executor.restore_vault(plan, confirm=lambda p: True)
    status_code = 500 if result.status == 'failed' else 200
    return jsonify(result.to_dict()), status_code


@bp.route('/vault', methods=['POST'])
def restore_vault():
    """
    Restore many files at once.

    Request body: same as /plan, plus
        - confirm: must be true, otherwise the plan is returned with 409

    Returns:
        JSON restore result
    """
    data = request.get_json(silent=True) or {}
    selectors = data.get('selectors')
    if not isinstance(selectors, dict) or not selectors:
        return jsonify({'error': 'selectors is required'}), 400

    executor = _executor()
    try:
        cutoffs = {k: _parse_cutoff(v) for k, v in selectors.items()}
        plan = executor.plan_vault_restore(cutoffs, **_plan_options(data))
    except ValueError as e:
        return jsonify({'error': f'Invalid cutoff: {e}'}), 400
    except RestoreError as e:
        return jsonify({'error': str(e)}), 500

    return _run_plan(executor, plan, data.get('confirm') is True)


@bp.route('/folder', methods=['GET'])
def browse_folder():
    """
    List a tracked folder.

    Query params:
        - path: Folder path (default: root)

    Returns:
        JSON with child folders, files, parent and revision timestamps
    """
    folder = (request.args.get('path') or '').strip('/')
    try:
        browser = FolderBrowser(_executor().history)
    except RestoreError as e:
        return jsonify({'error': str(e)}), 500

    folders, files = browser.list_folder(folder)
    return jsonify({
        'path': folder,
        'parent': browser.parent(folder) if folder else None,
        'folders': folders,
        'files': files,
        'timestamps': browser.timestamps_under(folder),
    })


@bp.route('/folder', methods=['POST'])
def restore_folder():
    """
    Restore a folder as of a cutoff.

    Request body:
        - path: Folder path (default: root)
        - cutoff: epoch ms, ISO timestamp or 'latest' (default: latest)
        - only_new, skip_deleted, prefix: restore options
        - confirm: must be true, otherwise the plan is returned with 409

    Returns:
        JSON restore result
    """
    data = request.get_json(silent=True) or {}
    executor = _executor()
    try:
        cutoff = _parse_cutoff(data.get('cutoff'))
        plan = executor.plan_folder_restore(data.get('path') or '', cutoff, **_plan_options(data))
    except ValueError as e:
        return jsonify({'error': f'Invalid cutoff: {e}'}), 400
    except RestoreError as e:
        return jsonify({'error': str(e)}), 500

    return _run_plan(executor, plan, data.get('confirm') is True)
