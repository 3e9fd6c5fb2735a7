import os
import json
import sys
from pathlib import Path

DEFAULTS = {
    "MODE": "phone",
    "POLLING_INTERVAL_SECONDS": 3,
    "POLL_MAX_ATTEMPTS": 100,
    "HEARTBEAT_INTERVAL_SECONDS": 3,
    "REQUEST_TIMEOUT_SECONDS": 8,
    "COOKIE_DOMAIN": "%.douyin.com",
    "COOKIE_SOURCE": "auto",
    "OBS_HOST": "127.0.0.1",
    "OBS_PORT": None,
    "OBS_PASSWORD": None,
    "OBS_EXECUTABLE": None,
    "OBS_PROCESS_NAMES": ["obs64.exe", "obs32.exe", "obs"],
    "OBS_SETTLE_SECONDS": 8,
    "OBS_CONNECT_ATTEMPTS": 5,
    "PROFILE_NAME": None,
    "SCENE_COLLECTION_NAME": None,
    "STOP_OBS_ON_EXIT": True,
    "COMPANION_EXECUTABLE": None,
    "COMPANION_PROCESS_NAMES": ["MediaSDK_Server.exe"],
    "COMPANION_SETTLE_SECONDS": 15,
}

COOKIE_SOURCES = ("cache", "companion", "browser", "auto")


def default_config_dir():
    env = os.environ.get("DOUYIN_RELAY_CONFIG_DIR")
    if env:
        return env
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), "config")


def config_path(config_dir):
    return os.path.join(config_dir, "config.json")


def cookie_cache_path(config_dir):
    return os.path.join(config_dir, "douyin_cookies.txt")


def load_config(config_dir):
    """
    Loads config.json from config_dir, filling in defaults for missing keys.
    A missing file is not an error; a malformed one is.
    """
    cfg = dict(DEFAULTS)
    path = config_path(config_dir)
    if not os.path.exists(path):
        return cfg
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"config file {path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"config file {path} must contain a JSON object")
    cfg.update(data)
    return cfg


def save_config(config_dir, cfg):
    os.makedirs(config_dir, exist_ok=True)
    # only persist what differs from the defaults
    out = {k: v for k, v in cfg.items() if DEFAULTS.get(k, object()) != v}
    with open(config_path(config_dir), "w", encoding="utf-8") as f:
        json.dump(out, f, indent=4, ensure_ascii=False)


def _appdata():
    return os.environ.get("APPDATA") or os.path.join(Path.home(), "AppData", "Roaming")


def companion_paths():
    """Cookie DB and Local State of the webcast_mate companion app."""
    base = os.path.join(_appdata(), "webcast_mate")
    return {
        "cookies": os.path.join(base, "Network", "Cookies"),
        "local_state": os.path.join(base, "Local State"),
        "room_store": os.path.join(base, "WBStore", "roomStore.json"),
    }


def obs_websocket_config_path():
    if sys.platform == "win32":
        base = os.path.join(_appdata(), "obs-studio")
    elif sys.platform == "darwin":
        base = os.path.join(Path.home(), "Library", "Application Support", "obs-studio")
    else:
        base = os.path.join(os.environ.get("XDG_CONFIG_HOME") or os.path.join(Path.home(), ".config"), "obs-studio")
    return os.path.join(base, "plugin_config", "obs-websocket", "config.json")
