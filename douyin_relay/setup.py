import os
import logging

from .auth import CookieVault, login_with_browser
from .config import (
    companion_paths,
    cookie_cache_path,
    default_config_dir,
    load_config,
    obs_websocket_config_path,
    save_config,
)
from .errors import CookieVaultError
from .obs_bridge import find_obs_executable, read_websocket_config


def ask(prompt, default=None):
    suffix = f" [{default}]" if default not in (None, "") else ""
    answer = input(f"{prompt}{suffix}: ").strip()
    return answer or default


def obtain_cookies(config_dir):
    """Tries the companion app's store first, then offers a browser login."""
    cache = cookie_cache_path(config_dir)
    paths = companion_paths()
    if os.path.exists(paths["cookies"]):
        print("\nFound the Douyin companion app data, extracting its login...")
        try:
            result = CookieVault(paths["cookies"], paths["local_state"], cache).extract_cookies()
            print(f"Extracted {len(result)} cookie(s).")
            return True
        except CookieVaultError as e:
            print(f"Could not use the companion login: {e}")

    while True:
        if ask("Log in with a browser window now? (y/n)", "y").lower() != "y":
            return False
        if login_with_browser(cache) is not None:
            print("Login successful!")
            return True
        print("Login failed or was cancelled.")


def choose_mode(current):
    print("\n--- Broadcast mode ---")
    print("  [1] phone - use the room opened from the companion app / phone (ready at status 2)")
    print("  [2] auto  - create a third-party push room (ready at status 1)")
    while True:
        choice = ask("Select mode", "1" if current == "phone" else "2")
        if choice in ("1", "phone"):
            return "phone"
        if choice in ("2", "auto"):
            return "auto"
        print("Error: enter 1 or 2.")


def choose_obs(config):
    print("\n--- OBS ---")
    exe = config.get("OBS_EXECUTABLE") or find_obs_executable()
    while True:
        exe = ask("Path to the OBS executable", exe)
        if exe and os.path.isfile(exe):
            break
        print(f"Error: '{exe}' is not a file.")
        if ask("Try a different path? (y/n)", "y").lower() != "y":
            exe = None
            break

    ws_path = obs_websocket_config_path()
    ws = read_websocket_config(ws_path)
    if ws is None:
        print(f"obs-websocket config not found at {ws_path}; it will be created when OBS first starts.")
    elif not ws.get("server_enabled"):
        print("obs-websocket server is disabled; the relay will enable it and restart OBS when needed.")
    else:
        print(f"obs-websocket is enabled on port {ws.get('server_port', 4455)}.")
    return exe


def main():
    """Guides the user through writing config.json."""
    print("--- Douyin Relay Setup ---")
    config_dir = default_config_dir()
    os.makedirs(config_dir, exist_ok=True)
    config = load_config(config_dir)

    # 1. Cookies
    if not obtain_cookies(config_dir):
        print("\nNo cookies available. You can re-run setup or use --source companion later.")

    # 2. Mode
    config["MODE"] = choose_mode(config.get("MODE", "phone"))

    # 3. OBS
    config["OBS_EXECUTABLE"] = choose_obs(config)

    profile = ask("\nOBS profile to switch to (blank to keep the current one)", config.get("PROFILE_NAME") or "")
    config["PROFILE_NAME"] = profile or None

    # 4. Save
    save_config(config_dir, config)
    print("\n-------------------------------------")
    print(f"Setup complete! Saved {os.path.join(config_dir, 'config.json')}.")
    print("Run `douyin-relay` to open the room and start streaming.")
    print("-------------------------------------")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    main()
