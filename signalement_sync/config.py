import os

basedir = os.path.abspath(os.path.dirname(__file__))


class Config:
    """Base configuration for the application."""

    # Flask settings
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-key-please-change-in-production'
    DEBUG = False
    TESTING = False

    # Database settings
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:///signalements.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging settings
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FORMAT = os.environ.get('LOG_FORMAT', 'json')
    LOG_TO_FILE = os.environ.get('LOG_TO_FILE', 'true').lower() == 'true'

    # Remote document store settings
    REMOTE_GATEWAY = os.environ.get('REMOTE_GATEWAY', 'firestore')  # firestore, memory
    FIRESTORE_PROJECT_ID = os.environ.get('FIRESTORE_PROJECT_ID')
    FIRESTORE_DATABASE = os.environ.get('FIRESTORE_DATABASE', '(default)')
    FIRESTORE_ACCESS_TOKEN = os.environ.get('FIRESTORE_ACCESS_TOKEN')
    FIRESTORE_BASE_URL = os.environ.get('FIRESTORE_BASE_URL', 'https://firestore.googleapis.com/v1')
    FIRESTORE_TIMEOUT = int(os.environ.get('FIRESTORE_TIMEOUT', 10))

    # Sync queue settings
    SYNC_MAX_RETRIES = int(os.environ.get('SYNC_MAX_RETRIES', 3))
    SYNC_RETRY_DELAY_MINUTES = int(os.environ.get('SYNC_RETRY_DELAY_MINUTES', 5))
    SYNC_STUCK_TIMEOUT_MINUTES = int(os.environ.get('SYNC_STUCK_TIMEOUT_MINUTES', 15))
    SYNC_BATCH_SIZE = int(os.environ.get('SYNC_BATCH_SIZE', 50))
    SYNC_WORKERS = int(os.environ.get('SYNC_WORKERS', 2))

    # Circuit breaker around the remote store
    SYNC_CIRCUIT_FAILURE_THRESHOLD = int(os.environ.get('SYNC_CIRCUIT_FAILURE_THRESHOLD', 5))
    SYNC_CIRCUIT_RECOVERY_TIMEOUT = int(os.environ.get('SYNC_CIRCUIT_RECOVERY_TIMEOUT', 60))

    # Scheduler settings
    SYNC_SCHEDULE = os.environ.get('SYNC_SCHEDULE', '*/30 * * * *')  # Every 30 minutes
    SYNC_SCHEDULER_ENABLED = os.environ.get('SYNC_SCHEDULER_ENABLED', 'true').lower() == 'true'
    SCHEDULER_API_ENABLED = False

    # Application settings
    VERSION = '1.0.0'


class DevelopmentConfig(Config):
    """Development configuration."""

    DEBUG = True
    LOG_FORMAT = os.environ.get('LOG_FORMAT', 'standard')

    # Use SQLite for development
    SQLALCHEMY_DATABASE_URI = os.environ.get('DEV_DATABASE_URL') or 'sqlite:///dev.db'

    # Keep development runs off the real Firestore project unless asked
    REMOTE_GATEWAY = os.environ.get('REMOTE_GATEWAY', 'memory')


class TestingConfig(Config):
    """Testing configuration."""

    TESTING = True
    DEBUG = True

    # Use in-memory SQLite for testing
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'

    LOG_FORMAT = 'standard'
    LOG_TO_FILE = False
    REMOTE_GATEWAY = 'memory'
    SYNC_SCHEDULER_ENABLED = False
    SYNC_WORKERS = 1


class ProductionConfig(Config):
    """Production configuration."""

    # Ensure proper secret key is set
    SECRET_KEY = os.environ.get('SECRET_KEY')
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,
    }


# Configuration dictionary
config_dict = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}

def get_config(config_name=None):
    """Get configuration class based on environment."""
    if not config_name:
        config_name = os.environ.get('FLASK_ENV', 'default')
    return config_dict.get(config_name, config_dict['default'])
