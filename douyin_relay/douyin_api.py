import json
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import requests

from .errors import AuthChallengeRequired, CookieHeaderMissing, SessionNetworkError

logger = logging.getLogger(__name__)

API_HOST = "webcast.amemv.com"
API_BASE = f"https://{API_HOST}/webcast/room"

# Remote status meanings were observed, not documented. Keep them in one place.
AUTH_CHALLENGE_CODE = 4003028
PING_STATUS_LIVE = 2
PING_STATUS_END = 4
END_REASON_NO = 1

_COMMON_QUERY = (
    "ac=wifi&app_name=webcast_mate&version_code=5.6.0&webcast_sdk_version=1520"
    "&os_version=10.0.22631&language=zh&aid=2079&live_id=1&channel=online"
)


class Mode:
    """
    One broadcast mode. A session keeps the same mode from start to end;
    everything that differs between modes lives on the subclass.
    """

    name = ""
    room_path = ""
    method = "POST"
    user_agent = ""
    device_query = ""
    ready_status = None

    @property
    def query(self):
        return f"{_COMMON_QUERY}&{self.device_query}"

    def room_url(self):
        return f"{API_BASE}/{self.room_path}/?{self.query}"

    def ping_url(self):
        return f"{API_BASE}/ping/anchor/?{self.query}"

    def build_request(self) -> Tuple[str, str, Dict[str, str]]:
        """(method, url, form body) for the latest-room call."""
        return self.method, self.room_url(), {}

    def build_headers(self, url: str, cookie: str) -> Dict[str, str]:
        return {
            "Connection": "Keep-Alive",
            "Content-Type": "application/x-www-form-urlencoded; Charset=UTF-8",
            "Accept": "application/json, text/plain, */*",
            "Accept-Language": "zh-cn",
            "Cookie": cookie,
            "Host": API_HOST,
            "Referer": url,
            "User-Agent": self.user_agent,
            "Origin": "file://",
            "Sec-Fetch-Site": "cross-site",
            "Sec-Fetch-Mode": "cors",
            "X-Requested-With": "XMLHttpRequest",
        }

    def is_ready(self, status) -> bool:
        return status is not None and status == self.ready_status

    def __eq__(self, other):
        return isinstance(other, Mode) and other.name == self.name

    def __hash__(self):
        return hash(self.name)

    def __repr__(self):
        return f"<Mode {self.name}>"


class PhoneMode(Mode):
    name = "phone"
    room_path = "get_latest_room"
    user_agent = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0"
    )
    device_query = (
        "device_platform=windows&resolution=1920%2A1080"
        "&device_id=3096676051989080&iid=1117559680415880"
    )
    ready_status = 2


class AutoMode(Mode):
    name = "auto"
    room_path = "create"
    user_agent = "okhttp/3.10.0.1"
    device_query = (
        "device_platform=android&resolution=1920*1080"
        "&device_id=2515294039547702&iid=1776452427890550"
    )
    ready_status = 1

    def __init__(self, title="我刚刚开播,大家快来看吧"):
        self.title = title

    def build_request(self):
        data = {
            "multi_resolution": "true",
            "title": self.title,
            "thumb_width": "1080",
            "thumb_height": "1920",
            "orientation": "0",
            "base_category": "416",
            "category": "1124",
            "has_commerce_goods": "false",
            "disable_location_permission": "1",
            "push_stream_type": "3",
            "auto_cover": "1",
            "cover_uri": "",
            "third_party": "1",
            "gift_auth": "1",
            "record_screen": "1",
        }
        return self.method, self.room_url(), data


MODES = {"phone": PhoneMode, "auto": AutoMode}


def get_mode(mode) -> Mode:
    if isinstance(mode, Mode):
        return mode
    try:
        return MODES[mode]()
    except KeyError:
        raise ValueError(f"unknown mode {mode!r}, expected one of {sorted(MODES)}") from None


@dataclass
class RoomInfo:
    status: Optional[int]
    room_id: str
    stream_id: str
    rtmp_push_url: Optional[str]


def split_rtmp_url(rtmp_url) -> Optional[Tuple[str, str]]:
    """'rtmp://host/app/key' -> ('rtmp://host/app', 'key'). None if there is no key part."""
    if not isinstance(rtmp_url, str):
        return None
    idx = rtmp_url.rfind("/")
    if 0 < idx < len(rtmp_url) - 1:
        return rtmp_url[:idx], rtmp_url[idx + 1:]
    return None


def _as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def parse_room(data) -> RoomInfo:
    data = _as_dict(data)
    attrs = _as_dict(data.get("living_room_attrs"))
    room_id = attrs.get("room_id_str") or str(attrs.get("room_id") or "")
    stream_id = data.get("stream_id_str") or str(data.get("stream_id") or "")
    rtmp = _as_dict(data.get("stream_url")).get("rtmp_push_url")
    status = data.get("status")
    if not isinstance(status, int) or isinstance(status, bool):
        status = None
    return RoomInfo(status=status, room_id=room_id, stream_id=stream_id, rtmp_push_url=rtmp)


class DouyinAPI:
    def __init__(self, cookie: str, session: Optional[requests.Session] = None, timeout=8):
        if not cookie:
            raise CookieHeaderMissing("No cookie data available. Log in or extract cookies first.")
        self.cookie = cookie
        self.session = session or requests.Session()
        self.timeout = timeout

    def _send(self, method, url, mode: Mode, data) -> dict:
        headers = mode.build_headers(url, self.cookie)
        try:
            response = self.session.request(method, url, data=data or None, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.RequestException as e:
            raise SessionNetworkError(f"{method} {url.split('?', 1)[0]} failed: {e}") from e
        except (json.JSONDecodeError, ValueError) as e:
            raise SessionNetworkError(f"non-JSON response from {url.split('?', 1)[0]}: {e}") from e
        if not isinstance(body, dict):
            raise SessionNetworkError(f"unexpected {type(body).__name__} body from {url.split('?', 1)[0]}")

        code = body.get("status_code")
        if code == AUTH_CHALLENGE_CODE:
            auth_url = _as_dict(body.get("extra")).get("web_auth_address")
            if auth_url:
                raise AuthChallengeRequired(auth_url)
        if code not in (None, 0):
            raise SessionNetworkError(body.get("status_msg") or f"status_code {code}", status_code=code)
        return body

    def get_latest_room(self, mode) -> RoomInfo:
        """Fetches the mode's latest room. Raises AuthChallengeRequired or SessionNetworkError."""
        mode = get_mode(mode)
        method, url, data = mode.build_request()
        body = self._send(method, url, mode, data)
        room = parse_room(body.get("data"))
        server = split_rtmp_url(room.rtmp_push_url)
        logger.debug(
            "room status=%s room_id=%s stream_id=%s server=%s",
            room.status, room.room_id, room.stream_id, server[0] if server else None,
        )
        return room

    def ping_anchor(self, mode, room_id, stream_id) -> dict:
        """One heartbeat; keeps the room marked live."""
        mode = get_mode(mode)
        data = {"stream_id": stream_id, "room_id": room_id, "status": str(PING_STATUS_LIVE)}
        return self._send("POST", mode.ping_url(), mode, data)

    def end_room(self, mode, room_id, stream_id) -> dict:
        mode = get_mode(mode)
        data = {
            "stream_id": stream_id,
            "room_id": room_id,
            "status": str(PING_STATUS_END),
            "reason_no": str(END_REASON_NO),
        }
        return self._send("POST", mode.ping_url(), mode, data)
