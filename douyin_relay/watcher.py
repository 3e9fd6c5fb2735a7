import os
import sys
import time
import logging
import argparse
import datetime
import webbrowser

from .auth import CookieVault, login_with_browser, read_cookie_header
from .config import (
    COOKIE_SOURCES,
    companion_paths,
    cookie_cache_path,
    default_config_dir,
    load_config,
    obs_websocket_config_path,
)
from .douyin_api import DouyinAPI, get_mode
from .errors import CompanionNotRunning, CookieHeaderMissing, CookieVaultError, ObsBridgeError, RelayError
from .obs_bridge import LocalProcess, ObsBridge, ObsProcess
from .poller import AuthRequired, Error, Ready, SessionPoller, StatusChanged
from .room_store import wait_for_room_store

logger = logging.getLogger(__name__)


def setup_logging(log_root, verbose=False):
    """Console plus a per-day file under log_root/YYYYMMDD/relay.log."""
    log_dir = os.path.join(log_root, datetime.datetime.now().strftime("%Y%m%d"))
    os.makedirs(log_dir, exist_ok=True)
    fmt = logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s", "%Y-%m-%d %H:%M:%S")
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in (logging.StreamHandler(), logging.FileHandler(os.path.join(log_dir, "relay.log"), encoding="utf-8")):
        handler.setFormatter(fmt)
        root.addHandler(handler)
    return log_dir


def acquire_cookie_header(config, config_dir, vault=None, browser_login=login_with_browser):
    """
    Cached header first, then the companion app's store, then an interactive
    browser login, as allowed by COOKIE_SOURCE.
    """
    source = config.get("COOKIE_SOURCE", "auto")
    if source not in COOKIE_SOURCES:
        raise ValueError(f"COOKIE_SOURCE must be one of {COOKIE_SOURCES}, got {source!r}")
    cache = cookie_cache_path(config_dir)

    if source in ("cache", "auto"):
        header = read_cookie_header(cache)
        if header:
            logger.info("Using cached cookies from %s", cache)
            return header
        if source == "cache":
            raise CookieHeaderMissing(f"no cached cookies at {cache}")

    if source in ("companion", "auto"):
        if vault is None:
            paths = companion_paths()
            vault = CookieVault(paths["cookies"], paths["local_state"], cache)
        try:
            return vault.extract_cookies(config.get("COOKIE_DOMAIN", "%.douyin.com")).header
        except CookieVaultError as e:
            if source == "companion":
                raise
            logger.warning("Companion cookie extraction failed (%s), falling back to browser login", e)

    result = browser_login(cache)
    if result is None:
        raise CookieHeaderMissing("browser login did not produce any cookies")
    return result.header


def build_bridge(config):
    process = ObsProcess(
        executable=config.get("OBS_EXECUTABLE"),
        process_names=config.get("OBS_PROCESS_NAMES") or ("obs64.exe", "obs32.exe", "obs"),
    )
    return ObsBridge(
        process,
        config.get("OBS_WEBSOCKET_CONFIG") or obs_websocket_config_path(),
        host=config.get("OBS_HOST"),
        port=config.get("OBS_PORT"),
        password=config.get("OBS_PASSWORD"),
        settle_seconds=config.get("OBS_SETTLE_SECONDS", 8),
        connect_attempts=config.get("OBS_CONNECT_ATTEMPTS", 5),
    )


def push_to_obs(bridge, stream_url, stream_key, config=None):
    """What happens once a push target is known: point OBS at it and start streaming."""
    config = config or {}
    if config.get("PROFILE_NAME") or config.get("SCENE_COLLECTION_NAME"):
        bridge.configure_profile(config.get("PROFILE_NAME"), config.get("SCENE_COLLECTION_NAME"))
    bridge.configure(stream_url, stream_key)
    return bridge.start_output()


def handle_event(event, bridge, config=None, open_url=webbrowser.open, seen_auth_urls=None):
    """
    Reacts to one session event. Returns True once OBS is streaming to the room.
    A challenge URL already in seen_auth_urls is not opened again.
    """
    if isinstance(event, Ready):
        logger.info("Room %s ready (stream %s)", event.room_id, event.stream_id)
        push_to_obs(bridge, event.server, event.key, config)
        return True
    if isinstance(event, AuthRequired):
        if seen_auth_urls is not None:
            if event.url in seen_auth_urls:
                logger.debug("Still waiting for the security check to be completed")
                return False
            seen_auth_urls.add(event.url)
        logger.warning("Douyin requires a security check. Complete it in the browser: %s", event.url)
        print(f"\n!!! Live security verification required. Open this URL and finish the check:\n    {event.url}\n")
        open_url(event.url)
    elif isinstance(event, StatusChanged):
        logger.info("Room status %s, not live yet", event.code)
    elif isinstance(event, Error):
        logger.warning("Session error: %s", event.detail)
    return False


def wait_until_live(poller, bridge, config, mode, sleep=time.sleep, open_url=webbrowser.open):
    """Polls at the configured cadence until OBS is streaming or attempts run out."""
    interval = config.get("POLLING_INTERVAL_SECONDS", 3)
    attempts = int(config.get("POLL_MAX_ATTEMPTS", 100))
    seen_auth_urls = set()
    event = poller.start(mode)
    for attempt in range(1, attempts + 1):
        if handle_event(event, bridge, config, open_url=open_url, seen_auth_urls=seen_auth_urls):
            return True
        if attempt == attempts:
            break
        sleep(interval)
        event = poller.poll()
    logger.error("Room did not become ready after %d polls", attempts)
    return False


def build_companion_process(config):
    return LocalProcess(
        config.get("COMPANION_EXECUTABLE"),
        config.get("COMPANION_PROCESS_NAMES") or ("MediaSDK_Server.exe",),
        "companion app",
    )


def ensure_companion_running(process, config, sleep=time.sleep):
    """Launches the companion app when its streaming service is not running yet."""
    if process.is_running():
        return
    if not process.executable:
        raise CompanionNotRunning("companion app is not running; start it or set COMPANION_EXECUTABLE")
    process.start()
    settle = config.get("COMPANION_SETTLE_SECONDS", 15)
    logger.info("Waiting %ss for the companion app to come up", settle)
    sleep(settle)
    if not process.is_running():
        raise CompanionNotRunning("companion app was started but its streaming service is still not running")


def run_companion(bridge, config, sleep=time.sleep, process=None):
    """Takes the push target the companion app wrote to its roomStore.json."""
    ensure_companion_running(process or build_companion_process(config), config, sleep=sleep)
    result = wait_for_room_store(companion_paths()["room_store"], sleep=sleep)
    if not result.ok:
        logger.error("Companion room store gave no push target: %s", result.error)
        return False
    logger.info("Companion room ready, pushing to %s", result.stream_url)
    push_to_obs(bridge, result.stream_url, result.stream_key, config)
    return True


def shutdown(poller, bridge, config):
    if poller is not None:
        poller.stop()
    # only touch OBS if we talked to it; stop_output would otherwise launch it
    if bridge.connected and config.get("STOP_OBS_ON_EXIT", True):
        try:
            bridge.stop_output()
        except ObsBridgeError as e:
            logger.warning("Could not stop OBS output: %s", e)
    bridge.close()


def main_loop(config_dir, mode=None, source="api"):
    config = load_config(config_dir)
    mode = get_mode(mode or config.get("MODE", "phone"))
    bridge = build_bridge(config)
    poller = None

    try:
        if source == "companion":
            live = run_companion(bridge, config)
        else:
            header = acquire_cookie_header(config, config_dir)
            api = DouyinAPI(header, timeout=config.get("REQUEST_TIMEOUT_SECONDS", 8))
            poller = SessionPoller(api, heartbeat_interval=config.get("HEARTBEAT_INTERVAL_SECONDS", 3))
            live = wait_until_live(poller, bridge, config, mode)
        if not live:
            return 1

        print("Streaming. Press Ctrl+C to end the broadcast.")
        while True:
            hb = poller.heartbeat if poller is not None else None
            if poller is not None and (hb is None or not hb.is_active):
                logger.error("Heartbeat is no longer running, ending session")
                return 1
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Interrupted, ending broadcast")
        return 0
    finally:
        shutdown(poller, bridge, config)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Start a Douyin live room and push it from OBS.")
    parser.add_argument("--config-dir", default=default_config_dir())
    parser.add_argument("--mode", choices=("phone", "auto"), help="overrides MODE in config.json")
    parser.add_argument("--source", choices=("api", "companion"), default="api",
                        help="'companion' reads the push target the companion app already obtained")
    parser.add_argument("--log-dir", default=None)
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    log_root = args.log_dir or os.path.join(os.path.dirname(os.path.abspath(args.config_dir)), "logs")
    setup_logging(log_root, args.verbose)
    try:
        return main_loop(args.config_dir, args.mode, args.source)
    except (RelayError, ValueError) as e:
        logger.error("%s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
