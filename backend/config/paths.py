"""
Centralized path configuration for DockPilot
Ensures all modules use consistent, volume-mounted paths
"""

import os

# The /app/data directory is mounted as a volume in Docker
DATA_DIR = os.getenv('DOCKPILOT_DATA_DIR', '/app/data')

# Database path - MUST be in the volume mount for persistence
DATABASE_PATH = os.path.join(DATA_DIR, 'dockpilot.db')
DATABASE_URL = f'sqlite:///{DATABASE_PATH}'

# Pre-update check scripts mounted next to the data volume
SCRIPTS_DIR = os.path.join(DATA_DIR, 'scripts')


def ensure_data_dirs():
    """Create data directories if they don't exist"""
    for directory in [DATA_DIR, SCRIPTS_DIR]:
        os.makedirs(directory, exist_ok=True)
        try:
            os.chmod(directory, 0o700)
        except OSError:
            pass  # May not have permission in some environments


# For development/testing outside Docker
if not os.path.exists('/app'):
    # Running locally, use relative paths
    DATA_DIR = os.getenv('DOCKPILOT_DATA_DIR', './data')
    DATABASE_PATH = os.path.join(DATA_DIR, 'dockpilot.db')
    DATABASE_URL = f'sqlite:///{DATABASE_PATH}'
    SCRIPTS_DIR = os.path.join(DATA_DIR, 'scripts')
