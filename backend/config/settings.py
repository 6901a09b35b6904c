"""
Configuration Management for bgshift
Centralizes all environment-based configuration and settings
"""

import os
import logging
from logging.handlers import RotatingFileHandler


class HealthCheckFilter(logging.Filter):
    """Filter out health check and routine polling requests to reduce log noise"""
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()

        # For uvicorn access logs, the message format is:
        # 'IP:PORT - "METHOD /path HTTP/1.1" STATUS'
        if '200 OK' in message or '200' in str(getattr(record, 'args', '')):
            if '/health' in message:
                return False
            # Rollout progress polling from dashboards and CI jobs
            if '/api/rollouts/' in message and '"GET' in message:
                return False
        return True


def setup_logging():
    """Configure application logging with rotation"""
    from .paths import LOG_DIR

    os.makedirs(LOG_DIR, mode=0o700, exist_ok=True)

    root_logger = logging.getLogger()

    # Close and clear any existing handlers to prevent file descriptor leaks
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    level = getattr(logging, AppConfig.LOG_LEVEL.upper(), logging.INFO)
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # Max 10MB per file, keep 14 backups
    file_handler = RotatingFileHandler(
        os.path.join(LOG_DIR, 'bgshift.log'),
        maxBytes=10*1024*1024,
        backupCount=14,
        encoding='utf-8'
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(console_formatter)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    uvicorn_access = logging.getLogger("uvicorn.access")
    uvicorn_access.addFilter(HealthCheckFilter())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class AppConfig:
    """Main application configuration"""

    # Server settings
    HOST = os.getenv('BGSHIFT_HOST', '0.0.0.0')
    PORT = int(os.getenv('BGSHIFT_PORT', 8080))

    from .paths import DATABASE_URL as DEFAULT_DATABASE_URL

    # Database settings
    DATABASE_URL = os.getenv('BGSHIFT_DATABASE_URL', DEFAULT_DATABASE_URL)

    # Logging
    LOG_LEVEL = os.getenv('BGSHIFT_LOG_LEVEL', 'INFO')

    # Adapter implementations for the platform, load balancer and metrics
    DRIVER = os.getenv('BGSHIFT_DRIVER', 'memory')

    # Scheduler and polling
    SCHEDULER_POLL_SECONDS = float(os.getenv('BGSHIFT_SCHEDULER_POLL_SECONDS', 5))
    ALARM_EVALUATION_SECONDS = int(os.getenv('BGSHIFT_ALARM_EVALUATION_SECONDS', 300))
    PROVISIONING_POLL_SECONDS = int(os.getenv('BGSHIFT_PROVISIONING_POLL_SECONDS', 15))
    PROVISIONING_TIMEOUT_SECONDS = int(os.getenv('BGSHIFT_PROVISIONING_TIMEOUT_SECONDS', 1800))
    HOOK_TIMEOUT_SECONDS = float(os.getenv('BGSHIFT_HOOK_TIMEOUT_SECONDS', 60))

    # Rollout policy
    ALARM_ROLLBACK_DEFAULT = _env_bool('BGSHIFT_ALARM_ROLLBACK_DEFAULT', True)
    RETAIN_FAILED_ENVIRONMENT = _env_bool('BGSHIFT_RETAIN_FAILED_ENVIRONMENT', True)

    # Pseudo parameters available to templates
    REGION = os.getenv('BGSHIFT_REGION', 'us-east-1')
    ACCOUNT_ID = os.getenv('BGSHIFT_ACCOUNT_ID', '000000000000')
    PARTITION = os.getenv('BGSHIFT_PARTITION', 'aws')

    @classmethod
    def validate(cls):
        """Validate configuration"""
        if cls.PORT < 1 or cls.PORT > 65535:
            raise ValueError(f"Invalid port: {cls.PORT}")

        if cls.SCHEDULER_POLL_SECONDS <= 0:
            raise ValueError(f"Scheduler poll interval must be positive: {cls.SCHEDULER_POLL_SECONDS}")

        # Alarm-triggered aborts must land within one evaluation period
        if cls.ALARM_EVALUATION_SECONDS < 60 or cls.ALARM_EVALUATION_SECONDS > 300:
            raise ValueError(
                f"Alarm evaluation period must be between 60 and 300 seconds: {cls.ALARM_EVALUATION_SECONDS}"
            )

        if cls.PROVISIONING_TIMEOUT_SECONDS < cls.PROVISIONING_POLL_SECONDS:
            raise ValueError("Provisioning timeout must be at least one provisioning poll interval")

        if cls.DRIVER not in ('memory',):
            raise ValueError(f"Unknown driver: {cls.DRIVER}")

        return True
