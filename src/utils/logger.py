"""
Logger Utility for Livechat Hub
Provides a centralized logger setup for the chat engine and its API server.
"""
import json
import logging
import os
import re
import sys
from logging.handlers import RotatingFileHandler

# --- Configuration ---
# Use an absolute path to the project root to ensure files are always found
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..'))
CONFIG_PATH = os.path.join(PROJECT_ROOT, 'src', 'common', 'config.json')
LOG_DIR = os.path.join(PROJECT_ROOT, 'logs')

_SECRET_PATTERNS = (
    re.compile(r'(oauth:)([A-Za-z0-9_\-]{5})[A-Za-z0-9_\-]+'),
    re.compile(r'(access_token=)([^&\s"]{5})[^&\s"]+'),
    re.compile(r'(Bearer )([^\s"]{5})[^\s"]+'),
)


class TokenMaskingFilter(logging.Filter):
    """Shortens anything that looks like a bearer credential to its first 5 characters."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = message
        for pattern in _SECRET_PATTERNS:
            masked = pattern.sub(r'\1\2...', masked)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def setup_logging():
    """
    Configures the root logger for the process.
    This function is idempotent and safe to call multiple times.
    It reads the configuration to decide whether to enable logging.
    """
    root_logger = logging.getLogger()

    # If handlers are already configured, another part of the process did it. Don't add more.
    if root_logger.hasHandlers():
        return

    # --- Determine if logging should be enabled ---
    try:
        with open(CONFIG_PATH, 'r', encoding='utf-8') as f:
            config = json.load(f)
        logging_enabled = config.get('logging_enabled', False)
    except (FileNotFoundError, json.JSONDecodeError) as e:
        # Fallback for situations where config is not available
        print(f"[PRE-LOGGING WARNING] Could not load config to check logging status: {e}", file=sys.stderr)
        logging_enabled = os.environ.get('LOGGING_ENABLED', 'false').lower() == 'true'

    # If disabled, we set the level so high that nothing gets through.
    log_level = logging.DEBUG if logging_enabled else logging.CRITICAL + 1
    root_logger.setLevel(log_level)

    if not logging_enabled:
        # Add a NullHandler to prevent "No handlers could be found" warnings
        root_logger.addHandler(logging.NullHandler())
        return

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - [%(name)s] - %(message)s')
    masking = TokenMaskingFilter()

    # Console Handler
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(logging.INFO)
    stream_handler.addFilter(masking)
    root_logger.addHandler(stream_handler)

    # File Handler (with rotation)
    os.makedirs(LOG_DIR, exist_ok=True)
    log_file_path = os.path.join(LOG_DIR, 'livechat.log')

    # Rotates logs after 5MB, keeping 3 backup files.
    file_handler = RotatingFileHandler(log_file_path, maxBytes=5*1024*1024, backupCount=3, encoding='utf-8')
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.DEBUG)
    file_handler.addFilter(masking)
    root_logger.addHandler(file_handler)

    root_logger.info(f"Logging configured. Level: {logging.getLevelName(log_level)}. Log file: {log_file_path}")
