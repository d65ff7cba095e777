import os
import logging
from flask import Flask

from signalement_sync.extensions import init_extensions
from signalement_sync.logger import setup_logging

log = logging.getLogger(__name__)

def create_app(test_config=None):
    """Application factory function."""
    # Create and configure the app
    app = Flask(__name__, instance_relative_config=True)

    # Load configuration
    from signalement_sync.config import get_config
    if test_config is None:
        config_name = os.environ.get('FLASK_ENV', 'default')
        app.config.from_object(get_config(config_name))
    else:
        # Test configs override the testing defaults
        app.config.from_object(get_config('testing'))
        app.config.from_mapping(test_config)

    # Ensure the instance folder exists
    try:
        os.makedirs(app.instance_path, exist_ok=True)
    except OSError:
        pass

    # Configure logging
    setup_logging(app)

    # Initialize extensions
    init_extensions(app)

    # Import models so every table is registered on the metadata
    from signalement_sync import models  # noqa: F401

    # Services and CLI
    from signalement_sync.services.container import ServiceContainer
    ServiceContainer(app)

    from signalement_sync.commands import register_commands
    register_commands(app)

    # Background executor and scheduled sync
    from signalement_sync.tasks import init_tasks
    init_tasks(app)

    # Add teardown handler to clean up resources
    @app.teardown_appcontext
    def teardown_db(exception=None):
        """Clean up at the end of the app context."""
        from signalement_sync.extensions import db
        db.session.remove()

    log.info(f"Signalement sync {app.config.get('VERSION')} ready (gateway: {app.config.get('REMOTE_GATEWAY')})")
    return app
