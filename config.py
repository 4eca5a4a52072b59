#!/usr/bin/env python3
"""
Configuration management for the thread notifier.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, validation, and provides a clean interface
for accessing configuration values throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR, CRITICAL
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    This function configures the logging system for the whole notifier process.
    It sets up a unified logging configuration that can be controlled via environment variables:

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR, CRITICAL) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    # Ensure unbuffered I/O for Python and any child processes
    try:
        environ["PYTHONUNBUFFERED"] = "1"
    except Exception:
        pass

    # Determine log level
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR,
        "CRITICAL": CRITICAL,
    }
    level = level_map.get(level_str, INFO)

    # Check if timestamps should be disabled
    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"

    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True  # Force reconfiguration if already configured
    )

    # Ensure unbuffered output
    sys.stdout.reconfigure(line_buffering=True)
    sys.stderr.reconfigure(line_buffering=True)

    # Reduce Azure SDK verbosity unless explicitly overridden
    azure_level_str = environ.get("AZURE_LOG_LEVEL", "WARNING").upper()
    environ["AZURE_LOG_LEVEL"] = azure_level_str
    azure_level = level_map.get(azure_level_str, WARNING)
    try:
        for name in (
            "azure",
            "azure.core",
            "azure.monitor",
            "azure.monitor.opentelemetry.exporter",
        ):
            getLogger(name).setLevel(azure_level)
    except Exception:
        # Never fail app startup due to logging tweaks
        pass

    return getLogger("ThreadNotifier")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    This function creates a logger with a name in the format "ThreadNotifier.{name}".
    All loggers created this way inherit the global logging configuration set by _setup_global_logger().

    Args:
        name: The logger name (e.g., "fetcher", "scheduler", "mailer")

    Returns:
        A logger instance with the unified configuration

    Example:
        logger = get_logger("mymodule")
        logger.info("This will appear as 'ThreadNotifier.mymodule - INFO - This will appear...'")
    """
    return getLogger(f"ThreadNotifier.{name}")

# Create single global logger instance
logger = _setup_global_logger()

class Config:
    """Configuration manager for the thread notifier.

    This class handles loading and validation of configuration from multiple sources:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)

    The loading order ensures that:
    - .env file variables override system environment variables
    - Secrets file variables override both system and .env variables
    - This allows for secure management of sensitive configuration

    Example secrets.yaml format:
    ```yaml
    SALT: "long-random-string"
    BREVO_API_KEY: "xkeysib-..."
    AZURE_STORAGE_ACCOUNT: "yourstorageaccount"
    AZURE_STORAGE_KEY: "your-storage-key"
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Storage: a local directory wins over Azure; with neither we fall back to ./data
        self.LOCAL_STORAGE = environ.get("LOCAL_STORAGE", "")
        self.AZURE_STORAGE_ACCOUNT = environ.get("AZURE_STORAGE_ACCOUNT")
        self.AZURE_STORAGE_KEY = environ.get("AZURE_STORAGE_KEY")
        self.AZURE_STORAGE_CONTAINER = environ.get("AZURE_STORAGE_CONTAINER", "subscriptions")
        if not self.LOCAL_STORAGE and not (self.AZURE_STORAGE_ACCOUNT and self.AZURE_STORAGE_KEY):
            self.LOCAL_STORAGE = path.join(base_dir, "data")

        # Secret used to derive subscription tokens from email addresses
        self.SALT = environ.get("SALT", "")

        # Public URLs
        self.BASE_URL = environ.get("BASE_URL", "http://localhost:8080").rstrip("/")
        self.FORUM_BASE_URL = environ.get("FORUM_BASE_URL", "https://advrider.com/f").rstrip("/")
        self.DEFAULT_THREAD_TITLE = environ.get("DEFAULT_THREAD_TITLE", "ADVRider Thread")
        self.USER_AGENT = environ.get(
            "USER_AGENT",
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
        )

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # Retry configuration shared by fetch, storage and email
        self.FETCH_MAX_ATTEMPTS = self._validate_positive_int("FETCH_MAX_ATTEMPTS", 10, 1)
        self.STORAGE_MAX_ATTEMPTS = self._validate_positive_int("STORAGE_MAX_ATTEMPTS", 3, 1)
        self.EMAIL_MAX_ATTEMPTS = self._validate_positive_int("EMAIL_MAX_ATTEMPTS", 3, 1)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.0)
        self.RETRY_MAX_DELAY = self._validate_positive_float("RETRY_MAX_DELAY", 120.0, 0.0)
        self.RETRY_MAX_JITTER = self._validate_positive_float("RETRY_MAX_JITTER", 10.0, 0.0)

        # Polling cadence
        self.POLL_INTERVAL_SECONDS = self._validate_positive_int("POLL_INTERVAL_SECONDS", 300, 10)
        self.MIN_INTERVAL_MINUTES = self._validate_positive_int("MIN_INTERVAL_MINUTES", 5, 1)
        self.MAX_INTERVAL_MINUTES = self._validate_positive_int("MAX_INTERVAL_MINUTES", 240, 1)
        if self.MAX_INTERVAL_MINUTES < self.MIN_INTERVAL_MINUTES:
            logger.warning(
                "MAX_INTERVAL_MINUTES (%s) is below MIN_INTERVAL_MINUTES (%s); using defaults 5/240",
                self.MAX_INTERVAL_MINUTES,
                self.MIN_INTERVAL_MINUTES,
            )
            self.MIN_INTERVAL_MINUTES = 5
            self.MAX_INTERVAL_MINUTES = 240

        # Notification limits
        self.MAX_POSTS_PER_EMAIL = self._validate_positive_int("MAX_POSTS_PER_EMAIL", 10, 1)
        self.MAX_THREADS_PER_USER = self._validate_positive_int("MAX_THREADS_PER_USER", 20, 1)

        # Email delivery
        self.BREVO_API_KEY = environ.get("BREVO_API_KEY")
        self.BREVO_API_URL = environ.get("BREVO_API_URL", "https://api.brevo.com/v3/smtp/email")
        self.EMAIL_FROM_ADDRESS = environ.get("EMAIL_FROM_ADDRESS", "notifier@example.com")
        self.EMAIL_FROM_NAME = environ.get("EMAIL_FROM_NAME", "Thread Notifier")
        # Without a provider key we log emails instead of sending them
        self.MOCK_EMAIL = environ.get("MOCK_EMAIL", "false").lower() == "true" or not self.BREVO_API_KEY

        # File paths
        self.TEMPLATES_PATH = environ.get("TEMPLATES_PATH", path.join(base_dir, "templates"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE environment variable is set, loads the specified YAML file
        and sets environment variables from it. This allows for secure management
        of sensitive configuration data.

        Expected YAML formats (both supported):
        ```yaml
        # Preferred: top-level mapping
        SALT: "long-random-string"
        BREVO_API_KEY: "xkeysib-..."

        # Backward-compatible: nested under `environment`
        # environment:
        #   SALT: "long-random-string"
        ```
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
            return

        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return
        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
            logger.debug(f"Using 'environment' section from secrets file {secrets_file_path}")
        else:
            env_vars = secrets_config
            logger.debug(f"Using top-level mapping from secrets file {secrets_file_path}")

        if not env_vars:
            logger.warning(f"No environment variables found in secrets file {secrets_file_path}")
            return

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
                logger.debug(f"Set environment variable {key} from secrets file")
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")

        logger.info(f"Successfully loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def uses_azure_storage(self) -> bool:
        """True when subscriptions live in Azure Blob Storage rather than a local directory."""
        return not self.LOCAL_STORAGE and bool(self.AZURE_STORAGE_ACCOUNT and self.AZURE_STORAGE_KEY)

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "storage": "azure" if self.uses_azure_storage() else "local",
            "local_storage": self.LOCAL_STORAGE or None,
            "azure_container": self.AZURE_STORAGE_CONTAINER if self.uses_azure_storage() else None,
            "base_url": self.BASE_URL,
            "forum_base_url": self.FORUM_BASE_URL,
            "poll_interval_seconds": self.POLL_INTERVAL_SECONDS,
            "min_interval_minutes": self.MIN_INTERVAL_MINUTES,
            "max_interval_minutes": self.MAX_INTERVAL_MINUTES,
            "fetch_max_attempts": self.FETCH_MAX_ATTEMPTS,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_posts_per_email": self.MAX_POSTS_PER_EMAIL,
            "mock_email": self.MOCK_EMAIL,
            "has_salt": bool(self.SALT),
            "has_brevo_key": bool(self.BREVO_API_KEY),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
