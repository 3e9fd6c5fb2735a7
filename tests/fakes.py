import threading

from douyin_relay.douyin_api import RoomInfo, get_mode


def room(status, room_id="7300000000000000001", stream_id="1800000000000000002",
         rtmp="rtmp://push-rtmp.example.com/third/stream-1800000000000000002?expire=1&sign=abc"):
    return RoomInfo(status=status, room_id=room_id, stream_id=stream_id, rtmp_push_url=rtmp)


class FakeAPI:
    """Scripted stand-in for DouyinAPI. Each entry is a RoomInfo or an exception to raise."""

    def __init__(self, script=(), ping_error=None):
        self.script = list(script)
        self.ping_error = ping_error
        self.polls = []
        self.pings = 0
        self.ends = []
        self.before_return = None
        self._lock = threading.Lock()

    def get_latest_room(self, mode):
        self.polls.append(get_mode(mode).name)
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if self.before_return is not None:
            self.before_return()
        if isinstance(item, Exception):
            raise item
        return item

    def ping_anchor(self, mode, room_id, stream_id):
        with self._lock:
            self.pings += 1
        if self.ping_error is not None:
            raise self.ping_error
        return {"status_code": 0}

    def end_room(self, mode, room_id, stream_id):
        self.ends.append((get_mode(mode).name, room_id, stream_id))
        return {"status_code": 0}


class FakeBridge:
    def __init__(self):
        self.configured = []
        self.starts = 0
        self.stops = 0
        self.profiles = []
        self.closed = 0
        self.connected = True

    def configure(self, stream_url, stream_key):
        self.configured.append((stream_url, stream_key))

    def start_output(self):
        self.starts += 1
        return True

    def stop_output(self):
        self.stops += 1
        return True

    def configure_profile(self, profile_name=None, scene_collection_name=None):
        self.profiles.append((profile_name, scene_collection_name))

    def close(self):
        self.closed += 1
        self.connected = False
