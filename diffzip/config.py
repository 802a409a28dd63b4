import os


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes', 'on')


def _env_list(name, default):
    value = os.environ.get(name)
    if value is None:
        return list(default)
    return [item.strip() for item in value.split(',') if item.strip()]


class Config:
    """Base configuration"""

    DEBUG = False
    TESTING = False

    # Data directory for logs
    DATA_DIR = os.environ.get('DATA_DIR') or '/data'

    # Live tree
    VAULT_PATH = os.environ.get('VAULT_PATH') or '/data/vault'

    # Destination: 'vault', 'external' or 's3'
    BACKUP_DESTINATION = os.environ.get('BACKUP_DESTINATION') or 'vault'
    BACKUP_FOLDER = os.environ.get('BACKUP_FOLDER') or 'backup'
    BACKUP_FOLDER_EXTERNAL = os.environ.get('BACKUP_FOLDER_EXTERNAL') or '/data/backup'
    BACKUP_FOLDER_BUCKET = os.environ.get('BACKUP_FOLDER_BUCKET') or 'backup'
    RESTORE_FOLDER = os.environ.get('RESTORE_FOLDER') or 'restored'

    # Archive limits (0 = unlimited)
    MAX_SIZE_MB = float(os.environ.get('MAX_SIZE_MB', 30))
    MAX_FILES_IN_ZIP = int(os.environ.get('MAX_FILES_IN_ZIP', 100))
    PERFORM_NEXT_BACKUP_ON_MAX_FILES = _env_bool('PERFORM_NEXT_BACKUP_ON_MAX_FILES', True)

    # Enumeration
    INCLUDE_HIDDEN_FOLDER = _env_bool('INCLUDE_HIDDEN_FOLDER', False)
    IGNORE_NAMES = _env_list('IGNORE_NAMES', ['node_modules', '.git', '.trash'])

    # Automatic pass at launch
    START_BACKUP_AT_LAUNCH = _env_bool('START_BACKUP_AT_LAUNCH', False)
    START_BACKUP_AT_LAUNCH_TYPE = os.environ.get('START_BACKUP_AT_LAUNCH_TYPE') or 'only-new-and-existing'

    # S3-compatible object store
    S3_ENDPOINT = os.environ.get('S3_ENDPOINT') or ''
    S3_ACCESS_KEY = os.environ.get('S3_ACCESS_KEY') or ''
    S3_SECRET_KEY = os.environ.get('S3_SECRET_KEY') or ''
    S3_BUCKET = os.environ.get('S3_BUCKET') or 'diffzip'
    S3_REGION = os.environ.get('S3_REGION') or 'us-east-1'

    # Encryption of destination objects (empty = off)
    PASSPHRASE_OF_ZIP = os.environ.get('PASSPHRASE_OF_ZIP') or ''

    # Scheduler
    SCHEDULER_TIMEZONE = 'UTC'
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', True)


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    VAULT_PATH = os.path.join(DATA_DIR, 'vault')
    BACKUP_FOLDER_EXTERNAL = os.path.join(DATA_DIR, 'backup')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    SCHEDULER_ENABLED = False
    START_BACKUP_AT_LAUNCH = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
