import os
import sys
import json
import time
import shutil
import logging
import subprocess
import threading
from typing import Optional

import psutil
from obsws_python import ReqClient

from .errors import (
    ControlSocketConfigNotFound,
    ControlSocketUnreachable,
    ObsBridgeError,
    ObsRequestFailed,
    RelayError,
)

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 4455
STREAM_SERVICE_TYPE = "rtmp_custom"

_WINDOWS_OBS_CANDIDATES = (
    r"C:\Program Files\obs-studio\bin\64bit\obs64.exe",
    r"C:\Program Files (x86)\obs-studio\bin\64bit\obs64.exe",
)


def find_obs_executable() -> Optional[str]:
    for name in ("obs64", "obs"):
        found = shutil.which(name)
        if found:
            return found
    if sys.platform == "win32":
        for candidate in _WINDOWS_OBS_CANDIDATES:
            if os.path.exists(candidate):
                return candidate
    return None


class LocalProcess:
    """Start/stop of a local desktop process, found by executable name."""

    missing_error = RelayError

    def __init__(self, executable, process_names, label):
        self.executable = executable
        self.process_names = {n.lower() for n in process_names}
        self.label = label

    def _processes(self):
        found = []
        for proc in psutil.process_iter(["pid", "name"]):
            name = (proc.info.get("name") or "").lower()
            if name in self.process_names:
                found.append(proc)
        return found

    def is_running(self) -> bool:
        return bool(self._processes())

    def start(self):
        if not self.executable:
            raise self.missing_error(f"{self.label} executable not found; set its path in config.json")
        logger.info("Starting %s: %s", self.label, self.executable)
        # desktop apps resolve their data files relative to the working directory
        subprocess.Popen([self.executable], cwd=os.path.dirname(self.executable) or None)

    def graceful_stop(self, timeout=10) -> bool:
        procs = self._processes()
        if not procs:
            return True
        for proc in procs:
            try:
                if sys.platform == "win32":
                    # without /F taskkill posts WM_CLOSE, letting the app save its state
                    subprocess.run(["taskkill", "/PID", str(proc.pid)], capture_output=True, check=False)
                else:
                    proc.terminate()
            except psutil.NoSuchProcess:
                continue
        _, alive = psutil.wait_procs(procs, timeout=timeout)
        return not alive

    def force_stop(self, timeout=5):
        procs = self._processes()
        for proc in procs:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                continue
        psutil.wait_procs(procs, timeout=timeout)


class ObsProcess(LocalProcess):
    missing_error = ObsBridgeError

    def __init__(self, executable=None, process_names=("obs64.exe", "obs32.exe", "obs")):
        super().__init__(executable or find_obs_executable(), process_names, "OBS")


def read_websocket_config(path) -> Optional[dict]:
    if not os.path.exists(path):
        return None
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ControlSocketConfigNotFound(f"obs-websocket config at {path} is not valid JSON: {e}") from e
    return data if isinstance(data, dict) else None


def write_websocket_config(path, data):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=4)


class ObsBridge:
    """
    Owns the one control-socket connection to OBS. Every public call
    (re)establishes the connection first, so the bridge never has to be
    "connected" at construction time.
    """

    def __init__(self, process, websocket_config_path, host=None, port=None, password=None,
                 settle_seconds=8, connect_attempts=5, retry_delay=1.0, timeout=5,
                 client_factory=ReqClient, sleep=time.sleep):
        self.process = process
        self.websocket_config_path = websocket_config_path
        self.host = host
        self.port = port
        self.password = password
        self.settle_seconds = settle_seconds
        self.connect_attempts = max(1, int(connect_attempts))
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.client_factory = client_factory
        self.sleep = sleep
        self._client = None
        self._lock = threading.Lock()

    @property
    def connected(self):
        return self._client is not None

    def _settle(self):
        logger.info("Waiting %ss for OBS to come up", self.settle_seconds)
        self.sleep(self.settle_seconds)

    def _shutdown_process(self):
        if self.process.graceful_stop():
            return
        logger.warning("OBS did not exit in time, killing it")
        self.process.force_stop()

    def ensure_reachable(self):
        """Makes sure OBS runs with its websocket server enabled, then (re)connects."""
        running = self.process.is_running()
        cfg = read_websocket_config(self.websocket_config_path)

        if cfg is None:
            if not running:
                self.process.start()
                self._settle()
                running = True
            cfg = read_websocket_config(self.websocket_config_path)
            if cfg is None:
                raise ControlSocketConfigNotFound(
                    f"obs-websocket config not found at {self.websocket_config_path}"
                )

        if not cfg.get("server_enabled"):
            logger.info("obs-websocket server is disabled, enabling it")
            if running:
                self._shutdown_process()
            cfg["server_enabled"] = True
            write_websocket_config(self.websocket_config_path, cfg)
            self.process.start()
            self._settle()
        elif not running:
            self.process.start()
            self._settle()

        self._connect(cfg)

    def _connect(self, cfg):
        host = self.host or DEFAULT_HOST
        port = self.port or cfg.get("server_port") or DEFAULT_PORT
        if self.password is not None:
            password = self.password
        elif cfg.get("auth_required", True):
            password = cfg.get("server_password") or ""
        else:
            password = ""

        self.close()
        last_error = None
        for attempt in range(1, self.connect_attempts + 1):
            try:
                client = self.client_factory(host=host, port=port, password=password, timeout=self.timeout)
                break
            except Exception as e:
                last_error = e
                logger.debug("connect to ws://%s:%s failed (%d/%d): %s", host, port, attempt, self.connect_attempts, e)
                if attempt < self.connect_attempts:
                    self.sleep(self.retry_delay)
        else:
            raise ControlSocketUnreachable(
                f"ws://{host}:{port} unreachable after {self.connect_attempts} attempts: {last_error}"
            ) from last_error

        with self._lock:
            self._client = client
        logger.info("Connected to OBS at ws://%s:%s", host, port)

    def close(self):
        """Drops the current connection. Safe to call from any thread, any number of times."""
        with self._lock:
            client, self._client = self._client, None
        if client is None:
            return
        try:
            client.disconnect()
        except Exception as e:
            logger.debug("error while disconnecting from OBS: %s", e)

    def call(self, method, *args):
        client = self._client
        if client is None:
            raise ControlSocketUnreachable("not connected to OBS")
        try:
            return getattr(client, method)(*args)
        except Exception as e:
            # never reuse a connection across a failure
            self.close()
            raise ObsRequestFailed(f"{method} failed: {e}") from e

    @property
    def client(self):
        return self._client

    def configure(self, stream_url, stream_key):
        self.ensure_reachable()
        self.call("set_stream_service_settings", STREAM_SERVICE_TYPE, {"server": stream_url, "key": stream_key})
        logger.info("OBS stream target set to %s", stream_url)

    def is_output_active(self) -> bool:
        status = self.call("get_stream_status")
        return bool(getattr(status, "output_active", False))

    def start_output(self) -> bool:
        """Starts streaming unless OBS already is. Returns True if a start was sent."""
        self.ensure_reachable()
        if self.is_output_active():
            logger.info("OBS is already streaming")
            return False
        self.call("start_stream")
        logger.info("OBS stream started")
        return True

    def stop_output(self) -> bool:
        self.ensure_reachable()
        if not self.is_output_active():
            logger.info("OBS is not streaming")
            return False
        self.call("stop_stream")
        logger.info("OBS stream stopped")
        return True

    def configure_profile(self, profile_name=None, scene_collection_name=None):
        from .obs_profile import ensure_profile, ensure_scene_collection

        self.ensure_reachable()
        result = {}
        if profile_name:
            result["profile"] = ensure_profile(self, profile_name, sleep=self.sleep)
        if scene_collection_name:
            result["scene_collection"] = ensure_scene_collection(self, scene_collection_name, sleep=self.sleep)
        return result
