"""
Centralized path configuration for bgshift
Ensures all modules use consistent, volume-mounted paths
"""

import os

# Base paths - these MUST use absolute paths to the volume mount
# The /app/data directory is mounted as a volume in the container image
DATA_DIR = os.getenv('BGSHIFT_DATA_DIR', '/app/data')

# Database path - MUST be in the volume mount so rollouts survive restarts
DATABASE_PATH = os.path.join(DATA_DIR, 'bgshift.db')
DATABASE_URL = f'sqlite:///{DATABASE_PATH}'

# Log directory
LOG_DIR = os.path.join(DATA_DIR, 'logs')


def ensure_data_dirs():
    """Create data directories if they don't exist"""
    for directory in [DATA_DIR, LOG_DIR]:
        os.makedirs(directory, exist_ok=True)
        try:
            os.chmod(directory, 0o700)
        except OSError:
            pass  # May not have permission in some environments


# For development/testing outside the container
if not os.path.exists('/app') and 'BGSHIFT_DATA_DIR' not in os.environ:
    # Running locally, use relative paths
    DATA_DIR = './data'
    DATABASE_PATH = os.path.join(DATA_DIR, 'bgshift.db')
    DATABASE_URL = f'sqlite:///{DATABASE_PATH}'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
