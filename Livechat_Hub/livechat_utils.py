import asyncio
import re
import time
from functools import wraps
from typing import Optional, Tuple
from urllib.parse import unquote
import logging

logger = logging.getLogger(__name__)

_HEX_COLOR = re.compile(r"^#?([0-9a-fA-F]{6})$")

def retry_with_backoff(max_retries=3, initial_delay=5, backoff_factor=2, exceptions=(Exception,)):
    """
    A decorator that retries the decorated function with exponential backoff.

    :param max_retries: Maximum number of retries before giving up
    :param initial_delay: Initial delay between retries in seconds
    :param backoff_factor: Multiplier for delay after each retry
    :param exceptions: Tuple of exceptions to catch and retry on
    """
    def decorator(func):
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            delay = initial_delay
            for attempt in range(max_retries):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_retries - 1:
                        logger.error(f"Max retries reached for {func.__name__}. Last error: {e}")
                        raise
                    logger.warning(f"Attempt {attempt + 1} for {func.__name__} failed: {e}. Retrying in {delay} seconds...")
                    await asyncio.sleep(delay)
                    delay *= backoff_factor

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            delay = initial_delay
            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_retries - 1:
                        logger.error(f"Max retries reached for {func.__name__}. Last error: {e}")
                        raise
                    logger.warning(f"Attempt {attempt + 1} for {func.__name__} failed: {e}. Retrying in {delay} seconds...")
                    time.sleep(delay)
                    delay *= backoff_factor

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        else:
            return sync_wrapper

    return decorator

def rgb_to_hex(rgb: Tuple[int, int, int]) -> str:
    """Formats an (R, G, B) tuple as an uppercase '#RRGGBB' string."""
    r, g, b = rgb
    return f"#{r:02X}{g:02X}{b:02X}"

def hex_to_rgb(hex_color: Optional[str]) -> Optional[Tuple[int, int, int]]:
    """Converts a hex color string to an (R, G, B) tuple, None for empty or invalid formats."""
    if not hex_color:
        return None
    match = _HEX_COLOR.match(hex_color.strip())
    if not match:
        return None
    digits = match.group(1)
    return int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16)

def normalize_hex_color(value: Optional[str]) -> Optional[str]:
    """Returns '#RRGGBB' for any 6-digit hex color (with or without '#'), None otherwise."""
    rgb = hex_to_rgb(value)
    return rgb_to_hex(rgb) if rgb else None

def mask_token(token: Optional[str]) -> str:
    """Short, log-safe preview of a credential."""
    if not token:
        return "<none>"
    return f"{token[:5]}... (len: {len(token)})"

def status_ok(status_code: int) -> bool:
    return 200 <= status_code < 300

def extract_access_token(value: str) -> str:
    """
    Pulls an access token out of an implicit-grant redirect or deep link
    (e.g. 'heychat://auth#access_token=abc&scope=...'). Anything without an
    'access_token=' parameter is returned trimmed, as a bare token.
    """
    value = value.strip().strip('"').strip("'")
    marker = "access_token="
    idx = value.find(marker)
    if idx == -1:
        return value
    token = value[idx + len(marker):].split("&")[0]
    return unquote(token).strip()
