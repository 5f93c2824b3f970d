"""
Configuration Management for DockPilot
Centralizes all environment-based configuration and settings
"""

import os
import logging
from logging.handlers import RotatingFileHandler


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('true', '1', 'yes')


def setup_logging():
    """Configure application logging with rotation"""
    from .paths import DATA_DIR

    # Create logs directory with secure permissions
    log_dir = os.path.join(DATA_DIR, 'logs')
    os.makedirs(log_dir, mode=0o700, exist_ok=True)

    root_logger = logging.getLogger()

    # Close and clear any existing handlers to prevent file descriptor leaks
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    level = getattr(logging, AppConfig.LOG_LEVEL.upper(), logging.INFO)
    root_logger.setLevel(level)

    # Console handler for stdout
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler with rotation for application logs
    # Max 10MB per file, keep 14 backups
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'dockpilot.log'),
        maxBytes=10*1024*1024,  # 10MB
        backupCount=14,  # Keep 14 old files
        encoding='utf-8'
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(console_formatter)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # docker-py and urllib3 log every HTTP round trip at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("docker").setLevel(logging.WARNING)


class AppConfig:
    """Main application configuration"""

    # Import centralized paths
    from .paths import DATABASE_URL as DEFAULT_DATABASE_URL, SCRIPTS_DIR as DEFAULT_SCRIPTS_DIR

    # Database settings
    DATABASE_URL = os.getenv('DOCKPILOT_DATABASE_URL', DEFAULT_DATABASE_URL)

    # Logging
    LOG_LEVEL = os.getenv('DOCKPILOT_LOG_LEVEL', 'INFO')

    # Pre-update check scripts (relative script paths resolve here)
    SCRIPTS_DIR = os.getenv('DOCKPILOT_SCRIPTS_DIR', DEFAULT_SCRIPTS_DIR)
    PRE_CHECK_TIMEOUT = int(os.getenv('DOCKPILOT_PRE_CHECK_TIMEOUT', 60))

    # Operations
    HEALTH_CHECK_TIMEOUT = int(os.getenv('DOCKPILOT_HEALTH_CHECK_TIMEOUT', 60))
    BATCH_CONCURRENCY = int(os.getenv('DOCKPILOT_BATCH_CONCURRENCY', 5))
    COMMIT_BEFORE_VERIFY = _env_bool('DOCKPILOT_COMMIT_BEFORE_VERIFY', False)

    # Update checks (seconds between full check cycles; 0 disables)
    CHECK_INTERVAL = int(os.getenv('DOCKPILOT_CHECK_INTERVAL', 21600))

    # Operation history retention
    OPERATION_RETENTION_DAYS = int(os.getenv('DOCKPILOT_OPERATION_RETENTION_DAYS', 90))

    # Progress polling fallback
    POLL_INTERVAL = float(os.getenv('DOCKPILOT_POLL_INTERVAL', 2.0))

    # Registry
    REGISTRY_MAX_ATTEMPTS = int(os.getenv('DOCKPILOT_REGISTRY_MAX_ATTEMPTS', 3))
    REGISTRY_MAX_DELAY = float(os.getenv('DOCKPILOT_REGISTRY_MAX_DELAY', 30.0))
    REGISTRY_CACHE_TTL = int(os.getenv('DOCKPILOT_REGISTRY_CACHE_TTL', 300))

    # Version classification
    DATE_DELTA_AS_MAJOR = _env_bool('DOCKPILOT_DATE_DELTA_AS_MAJOR', False)

    @classmethod
    def validate(cls):
        """Validate configuration"""
        if cls.HEALTH_CHECK_TIMEOUT < 1:
            raise ValueError(f"Health check timeout must be at least 1 second: {cls.HEALTH_CHECK_TIMEOUT}")

        if cls.PRE_CHECK_TIMEOUT < 1:
            raise ValueError(f"Pre-update check timeout must be at least 1 second: {cls.PRE_CHECK_TIMEOUT}")

        if cls.BATCH_CONCURRENCY < 1:
            raise ValueError(f"Batch concurrency must be at least 1: {cls.BATCH_CONCURRENCY}")

        if cls.POLL_INTERVAL <= 0:
            raise ValueError(f"Poll interval must be positive: {cls.POLL_INTERVAL}")

        if cls.REGISTRY_MAX_ATTEMPTS < 1:
            raise ValueError(f"Registry max attempts must be at least 1: {cls.REGISTRY_MAX_ATTEMPTS}")

        if cls.REGISTRY_MAX_DELAY < 0:
            raise ValueError(f"Registry max delay cannot be negative: {cls.REGISTRY_MAX_DELAY}")

        if cls.REGISTRY_CACHE_TTL < 0:
            raise ValueError(f"Registry cache TTL cannot be negative: {cls.REGISTRY_CACHE_TTL}")

        if cls.CHECK_INTERVAL < 0:
            raise ValueError(f"Check interval cannot be negative: {cls.CHECK_INTERVAL}")

        if cls.OPERATION_RETENTION_DAYS < 0:
            raise ValueError(f"Operation retention cannot be negative: {cls.OPERATION_RETENTION_DAYS}")

        if not cls.DATABASE_URL.startswith('sqlite:///'):
            raise ValueError(f"Only sqlite:/// database URLs are supported: {cls.DATABASE_URL}")

        if cls.LOG_LEVEL.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f"Invalid log level: {cls.LOG_LEVEL}")

        return True

    @classmethod
    def database_path(cls) -> str:
        """Filesystem path of the SQLite database named by DATABASE_URL"""
        return cls.DATABASE_URL[len('sqlite:///'):]
