"""
Builds the controller configuration: JSON defaults from src/common/config.json
with .env overrides on top.
"""
import copy
from typing import Any, Dict, Optional

from src.common.config import load_config
from src.utils.env_utils import get_env_var

DEFAULT_SETTINGS: Dict[str, Dict[str, Any]] = {
    "twitch": {},
    "kick": {},
    "youtube": {},
    "api": {"host": "127.0.0.1", "port": 8001},
}

# (section, key, env var, type)
ENV_OVERRIDES = (
    ("twitch", "client_id", "TWITCH_CLIENT_ID", str),
    ("twitch", "redirect_uri", "TWITCH_REDIRECT_URI", str),
    ("kick", "client_id", "KICK_CLIENT_ID", str),
    ("kick", "redirect_uri", "KICK_REDIRECT_URI", str),
    ("kick", "token_relay_url", "KICK_TOKEN_RELAY_URL", str),
    ("youtube", "client_id", "YT_CLIENT_ID", str),
    ("youtube", "redirect_uri", "YT_REDIRECT_URI", str),
    ("youtube", "poll_interval_s", "YT_POLL_INTERVAL", float),
    ("api", "host", "LIVECHAT_API_HOST", str),
    ("api", "port", "LIVECHAT_API_PORT", int),
)


def build_livechat_config(config_path: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
    settings = copy.deepcopy(DEFAULT_SETTINGS)
    for section, values in load_config(config_path).get("livechat_settings", {}).items():
        settings.setdefault(section, {}).update(values)

    for section, key, env_var, var_type in ENV_OVERRIDES:
        value = get_env_var(env_var, var_type)
        if value is not None:
            settings[section][key] = value
    return settings
