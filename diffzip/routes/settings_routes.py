"""
Settings routes - settings transfer, object store setup and history reset.
"""

import logging
from flask import Blueprint, current_app, jsonify, request

from diffzip.backup.executor import BackupError, reset_history
from diffzip.backup.storage import S3Storage, StorageError, get_destination_storage
from diffzip.settings import BackupSettings, SettingsError, export_settings, import_settings


bp = Blueprint('settings', __name__, url_prefix='/api/settings')
logger = logging.getLogger(__name__)

SECRET_FIELDS = ('s3_secret_key', 'passphrase_of_zip')


def _settings() -> BackupSettings:
    return BackupSettings.from_config(current_app.config)


def _masked(settings: BackupSettings) -> dict:
    data = settings.to_config()
    for name in SECRET_FIELDS:
        key = name.upper()
        data[key] = '••• configured •••' if data.get(key) else ''
    access_key = data.get('S3_ACCESS_KEY') or ''
    if len(access_key) > 6:
        data['S3_ACCESS_KEY'] = f"{access_key[:3]}***{access_key[-3:]}"
    elif access_key:
        data['S3_ACCESS_KEY'] = '***'
    return data


def _s3_storage(settings: BackupSettings, data: dict) -> S3Storage:
    return S3Storage(
        access_key=data.get('access_key') or settings.s3_access_key,
        secret_key=data.get('secret_key') or settings.s3_secret_key,
        bucket_name=data.get('bucket_name') or settings.s3_bucket,
        region=data.get('region') or settings.s3_region,
        endpoint=data.get('endpoint') or settings.s3_endpoint,
    )


@bp.route('/', methods=['GET'])
def get_settings():
    """
    Get current settings (secrets are masked).

    Returns:
        JSON with settings keyed like the app config
    """
    return jsonify(_masked(_settings()))


@bp.route('/export', methods=['POST'])
def export():
    """
    Export settings as an encrypted URI.

    Request body:
        - passphrase: Passphrase protecting the URI (required)

    Returns:
        JSON with the URI
    """
    data = request.get_json(silent=True) or {}
    if not data.get('passphrase'):
        return jsonify({'error': 'passphrase is required'}), 400

    uri = export_settings(_settings(), data['passphrase'])
    return jsonify({'uri': uri})


@bp.route('/import', methods=['POST'])
def import_():
    """
    Apply settings from an exported URI.

    Request body:
        - uri: URI from /export (required)
        - passphrase: Passphrase used at export (required)

    Returns:
        JSON with the applied settings (secrets masked)
    """
    data = request.get_json(silent=True) or {}
    if not data.get('uri'):
        return jsonify({'error': 'uri is required'}), 400
    if not data.get('passphrase'):
        return jsonify({'error': 'passphrase is required'}), 400

    try:
        settings = import_settings(data['uri'], data['passphrase'])
    except SettingsError as e:
        logger.warning(f"Settings import failed: {e}")
        return jsonify({'error': str(e)}), 400

    current_app.config.update(settings.to_config())
    logger.info("Settings have been imported")
    return jsonify({'message': 'Settings imported successfully', 'settings': _masked(settings)})


@bp.route('/storage/test', methods=['POST'])
def test_storage():
    """
    Test the object store connection.

    Request body (optional, falls back to current settings):
        - access_key, secret_key, bucket_name, region, endpoint

    Returns:
        JSON with success status and whether the bucket exists
    """
    data = request.get_json(silent=True) or {}
    settings = _settings()

    try:
        storage = _s3_storage(settings, data)
        exists = storage.test_connection()
    except StorageError as e:
        logger.warning(f"Storage error during test: {e}")
        return jsonify({'success': False, 'error': str(e)}), 400

    if not exists:
        return jsonify({
            'success': True,
            'bucket_exists': False,
            'message': f'Connected, but bucket {storage.bucket_name} does not exist'
        })
    return jsonify({
        'success': True,
        'bucket_exists': True,
        'message': f'Successfully connected to bucket: {storage.bucket_name}'
    })


@bp.route('/storage/bucket', methods=['POST'])
def create_bucket():
    """
    Create the configured bucket.

    Request body: same optional overrides as /storage/test

    Returns:
        JSON with success message
    """
    data = request.get_json(silent=True) or {}
    settings = _settings()

    try:
        storage = _s3_storage(settings, data)
        storage.create_bucket()
    except StorageError as e:
        logger.warning(f"Bucket creation failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 400

    return jsonify({'success': True, 'message': f'Bucket {storage.bucket_name} has been created'})


@bp.route('/reset-history', methods=['POST'])
def reset():
    """
    Reset the backup information at the destination.

    The next backup will archive every file again.

    Returns:
        JSON with success message
    """
    settings = _settings()
    vault = current_app.extensions['diffzip']['vault']

    try:
        reset_history(get_destination_storage(settings, vault))
    except (BackupError, StorageError, ValueError) as e:
        return jsonify({'error': str(e)}), 500

    return jsonify({'message': 'Backup information has been reset'})
