import re
import time
import logging

from .errors import ConfigVerificationFailed, ObsBridgeError

logger = logging.getLogger(__name__)

PROFILE_ATTEMPTS = 3
PROFILE_BACKOFF = 0.5
SCENE_COLLECTION_ATTEMPTS = 5
SCENE_COLLECTION_BACKOFF = 0.8

# CJK, kana, hangul, word characters and '-'; everything else is unsafe in OBS's folder names
_UNSAFE_NAME_CHARS = re.compile(r"[^\u4e00-\u9fff\u3040-\u309f\u30a0-\u30ff\uac00-\ud7af\w-]")


def format_profile_name(name: str) -> str:
    if not name:
        return ""
    return _UNSAFE_NAME_CHARS.sub("", re.sub(r"\s+", "_", name))


def switch_and_verify(bridge, name, kind, list_method, create_method, set_method,
                      names_attr, current_attr, attempts, backoff,
                      create_settle=0.8, switch_settle=0.8, sleep=time.sleep):
    """
    Create-if-absent, switch-if-different, then read back and check.
    The whole cycle is retried with linearly growing backoff; a single OBS
    call returning OK does not mean the switch actually happened.
    """
    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            if not bridge.connected:
                bridge.ensure_reachable()
            listing = bridge.call(list_method)
            names = list(getattr(listing, names_attr, None) or [])
            if name not in names:
                logger.info("Creating OBS %s %r", kind, name)
                bridge.call(create_method, name)
                sleep(create_settle)
            if getattr(listing, current_attr, None) != name:
                bridge.call(set_method, name)
                sleep(switch_settle)
            current = getattr(bridge.call(list_method), current_attr, None)
            if current != name:
                raise ConfigVerificationFailed(f"OBS {kind} is {current!r} after switching to {name!r}")
            logger.info("OBS %s is %r (attempt %d)", kind, name, attempt)
            return name
        except ObsBridgeError as e:
            last_error = e
            logger.warning("OBS %s setup attempt %d/%d failed: %s", kind, attempt, attempts, e)
            if attempt < attempts:
                sleep(backoff * attempt)
    raise ConfigVerificationFailed(
        f"could not switch OBS {kind} to {name!r} after {attempts} attempts: {last_error}"
    ) from last_error


def ensure_profile(bridge, name, attempts=PROFILE_ATTEMPTS, sleep=time.sleep):
    return switch_and_verify(
        bridge, format_profile_name(name), "profile",
        "get_profile_list", "create_profile", "set_current_profile",
        "profiles", "current_profile_name",
        attempts, PROFILE_BACKOFF, create_settle=0.6, sleep=sleep,
    )


def ensure_scene_collection(bridge, name, attempts=SCENE_COLLECTION_ATTEMPTS, sleep=time.sleep):
    return switch_and_verify(
        bridge, format_profile_name(name), "scene collection",
        "get_scene_collection_list", "create_scene_collection", "set_current_scene_collection",
        "scene_collections", "current_scene_collection_name",
        attempts, SCENE_COLLECTION_BACKOFF, sleep=sleep,
    )
