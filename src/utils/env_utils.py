"""
Environment Variable Utility for Livechat Hub
Provides functions for fetching environment variables.
"""
import logging

import dotenv

logger = logging.getLogger(__name__)

def get_env_var(env_var, var_type=str, default=None):
    """
    Fetches information from .env file.

    Args:
        env_var (str): Any environment variable in .env file.
        var_type (type): Conversion applied to the raw string value.
        default: Returned when the variable is missing or empty.
    Returns:
        The converted value, or `default` if not found or not convertible.
    """
    env_key = dotenv.get_key(dotenv_path=dotenv.find_dotenv(usecwd=True), key_to_get=env_var)

    if not env_key:
        return default
    if var_type is bool:
        return env_key.strip().lower() in ("1", "true", "yes", "on")
    try:
        return var_type(env_key) if var_type else env_key
    except (TypeError, ValueError):
        logger.error(f"{env_var} is not of type {var_type}, using default")
        return default
