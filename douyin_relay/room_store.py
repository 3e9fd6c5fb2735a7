import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

from .douyin_api import split_rtmp_url

logger = logging.getLogger(__name__)

READY_STATUS = 2
MAX_VISITED_NODES = 10000

# tried in order before falling back to a bounded walk
STATUS_PATHS = (("status",), ("roomStore", "status"))
RTMP_PATHS = (
    ("rtmp_push_url",),
    ("settings", "stream_url", "rtmp_push_url"),
    ("roomStore", "settings", "stream_url", "rtmp_push_url"),
)


@dataclass
class StoreResult:
    stream_url: Optional[str] = None
    stream_key: Optional[str] = None
    status: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self):
        return bool(self.stream_url and self.stream_key)


def _lookup(obj, path):
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def find_key(tree, key, max_nodes=MAX_VISITED_NODES):
    """Depth-first search for a string value under `key`. Gives up after max_nodes containers."""
    stack = [tree]
    visited = 0
    while stack:
        node = stack.pop()
        visited += 1
        if visited > max_nodes:
            logger.warning("Gave up searching for %r after %d nodes", key, max_nodes)
            return None
        if isinstance(node, dict):
            value = node.get(key)
            if isinstance(value, str):
                return value
            stack.extend(v for v in node.values() if isinstance(v, (dict, list)))
        elif isinstance(node, list):
            stack.extend(v for v in node if isinstance(v, (dict, list)))
    return None


def parse_room_store(data) -> StoreResult:
    if not isinstance(data, dict):
        return StoreResult(error="roomStore.json does not hold an object")

    status = None
    for path in STATUS_PATHS:
        value = _lookup(data, path)
        if isinstance(value, int) and not isinstance(value, bool):
            status = value
            break
    if status != READY_STATUS:
        return StoreResult(status=status, error=f"room not ready, current status: {status}")

    rtmp = None
    for path in RTMP_PATHS:
        value = _lookup(data, path)
        if isinstance(value, str) and value:
            rtmp = value
            break
    if rtmp is None:
        rtmp = find_key(data, "rtmp_push_url")
    if not rtmp:
        return StoreResult(status=status, error="rtmp_push_url not found in roomStore.json")

    parts = split_rtmp_url(rtmp)
    if parts is None:
        return StoreResult(status=status, error="could not split rtmp_push_url")
    return StoreResult(stream_url=parts[0], stream_key=parts[1], status=status)


def read_room_store(path) -> StoreResult:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
        data = json.loads(raw or "{}")
    except (OSError, ValueError) as e:
        return StoreResult(error=f"cannot read roomStore.json: {e}")
    return parse_room_store(data)


def wait_for_room_store(path, attempts=25, delay=1.0, sleep=time.sleep) -> StoreResult:
    """Re-reads the store until the companion app has written a live room into it."""
    result = StoreResult(error="no attempts made")
    for attempt in range(1, attempts + 1):
        if os.path.exists(path):
            result = read_room_store(path)
            if result.ok:
                return result
        else:
            result = StoreResult(error=f"{path} does not exist yet")
        logger.debug("roomStore not ready (%d/%d): %s", attempt, attempts, result.error)
        if attempt < attempts:
            sleep(delay)
    return result
