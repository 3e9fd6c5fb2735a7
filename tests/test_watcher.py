import pytest

from douyin_relay.auth import CookieSet
from douyin_relay.errors import AuthChallengeRequired, CompanionNotRunning, CookieHeaderMissing, NoCookiesDecrypted
from douyin_relay.poller import AuthRequired, Error, Ready, SessionPoller, StatusChanged
from douyin_relay.watcher import (
    acquire_cookie_header,
    ensure_companion_running,
    handle_event,
    shutdown,
    wait_until_live,
)

from fakes import FakeAPI, FakeBridge, room

READY = Ready(
    rtmp_url="rtmp://push.example.com/third/key?sign=1",
    room_id="r1",
    stream_id="s1",
    server="rtmp://push.example.com/third",
    key="key?sign=1",
)


class FakeVault:
    def __init__(self, header=None, error=None):
        self.header = header
        self.error = error
        self.domains = []

    def extract_cookies(self, domain_filter):
        self.domains.append(domain_filter)
        if self.error is not None:
            raise self.error
        return CookieSet(cookies=(), header=self.header)


class FakeBrowserLogin:
    def __init__(self, header=None):
        self.header = header
        self.calls = []

    def __call__(self, cache_path):
        self.calls.append(cache_path)
        if self.header is None:
            return None
        return CookieSet(cookies=(), header=self.header)


def test_ready_event_pushes_target_to_obs() -> None:
    bridge = FakeBridge()

    assert handle_event(READY, bridge) is True

    assert bridge.configured == [("rtmp://push.example.com/third", "key?sign=1")]
    assert bridge.starts == 1
    assert bridge.profiles == []


def test_ready_event_sets_up_profile_when_configured() -> None:
    bridge = FakeBridge()

    handle_event(READY, bridge, {"PROFILE_NAME": "relay", "SCENE_COLLECTION_NAME": None})

    assert bridge.profiles == [("relay", None)]


def test_auth_event_surfaces_url(capsys) -> None:
    opened = []
    url = "https://verify.example.com/?t=1"

    assert handle_event(AuthRequired(url=url), FakeBridge(), open_url=opened.append) is False

    assert opened == [url]
    assert url in capsys.readouterr().out


def test_other_events_do_not_touch_obs() -> None:
    bridge = FakeBridge()

    assert handle_event(StatusChanged(code=4), bridge) is False
    assert handle_event(Error(detail="timeout"), bridge) is False
    assert bridge.configured == []


def test_cached_cookie_short_circuits(tmp_path) -> None:
    (tmp_path / "douyin_cookies.txt").write_text("sessionid=cached", encoding="utf-8")
    vault = FakeVault(header="sessionid=vault")

    header = acquire_cookie_header({"COOKIE_SOURCE": "auto"}, str(tmp_path), vault=vault)

    assert header == "sessionid=cached"
    assert vault.domains == []


def test_companion_store_used_without_cache(tmp_path) -> None:
    vault = FakeVault(header="sessionid=vault")
    login = FakeBrowserLogin("sessionid=browser")

    header = acquire_cookie_header({"COOKIE_SOURCE": "auto", "COOKIE_DOMAIN": "%.douyin.com"}, str(tmp_path),
                                   vault=vault, browser_login=login)

    assert header == "sessionid=vault"
    assert vault.domains == ["%.douyin.com"]
    assert login.calls == []


def test_vault_failure_falls_back_to_browser(tmp_path) -> None:
    login = FakeBrowserLogin("sessionid=browser")

    header = acquire_cookie_header({"COOKIE_SOURCE": "auto"}, str(tmp_path),
                                   vault=FakeVault(error=NoCookiesDecrypted("none")), browser_login=login)

    assert header == "sessionid=browser"
    assert login.calls == [str(tmp_path / "douyin_cookies.txt")]


def test_companion_only_source_propagates_vault_errors(tmp_path) -> None:
    login = FakeBrowserLogin("sessionid=browser")

    with pytest.raises(NoCookiesDecrypted):
        acquire_cookie_header({"COOKIE_SOURCE": "companion"}, str(tmp_path),
                              vault=FakeVault(error=NoCookiesDecrypted("none")), browser_login=login)
    assert login.calls == []


def test_cache_only_source_without_cache(tmp_path) -> None:
    with pytest.raises(CookieHeaderMissing):
        acquire_cookie_header({"COOKIE_SOURCE": "cache"}, str(tmp_path), vault=FakeVault(header="x"))


def test_browser_login_giving_nothing(tmp_path) -> None:
    with pytest.raises(CookieHeaderMissing):
        acquire_cookie_header({"COOKIE_SOURCE": "browser"}, str(tmp_path), browser_login=FakeBrowserLogin())


def test_unknown_cookie_source(tmp_path) -> None:
    with pytest.raises(ValueError):
        acquire_cookie_header({"COOKIE_SOURCE": "clipboard"}, str(tmp_path))


def test_wait_until_live_pushes_on_ready() -> None:
    api = FakeAPI([room(None), room(4), room(2)])
    poller = SessionPoller(api, heartbeat_interval=60)
    bridge = FakeBridge()
    sleeps = []
    try:
        live = wait_until_live(poller, bridge, {"POLLING_INTERVAL_SECONDS": 3, "POLL_MAX_ATTEMPTS": 10},
                               "phone", sleep=sleeps.append, open_url=lambda url: None)
    finally:
        poller.stop()

    assert live is True
    assert sleeps == [3, 3]
    assert api.polls == ["phone"] * 3
    assert bridge.configured == [("rtmp://push-rtmp.example.com/third",
                                  "stream-1800000000000000002?expire=1&sign=abc")]
    assert bridge.starts == 1


def test_wait_until_live_gives_up() -> None:
    api = FakeAPI([room(0)])
    poller = SessionPoller(api, heartbeat_interval=60)
    bridge = FakeBridge()
    sleeps = []

    live = wait_until_live(poller, bridge, {"POLLING_INTERVAL_SECONDS": 1, "POLL_MAX_ATTEMPTS": 3},
                           "auto", sleep=sleeps.append)

    assert live is False
    assert len(api.polls) == 3
    assert sleeps == [1, 1]
    assert bridge.configured == []


def test_shutdown_stops_output_and_ends_room() -> None:
    api = FakeAPI([room(2)])
    poller = SessionPoller(api, heartbeat_interval=60)
    poller.start("phone")
    bridge = FakeBridge()

    shutdown(poller, bridge, {"STOP_OBS_ON_EXIT": True})

    assert len(api.ends) == 1
    assert bridge.stops == 1
    assert bridge.closed == 1


def test_shutdown_leaves_unconnected_obs_alone() -> None:
    bridge = FakeBridge()
    bridge.connected = False

    shutdown(None, bridge, {"STOP_OBS_ON_EXIT": True})

    assert bridge.stops == 0
    assert bridge.closed == 1


def test_challenge_url_opened_once_while_user_completes_it() -> None:
    url = "https://verify.example.com/?ticket=1"
    api = FakeAPI([AuthChallengeRequired(url)] * 5 + [room(2)])
    poller = SessionPoller(api, heartbeat_interval=60)
    opened = []
    try:
        live = wait_until_live(poller, FakeBridge(), {"POLLING_INTERVAL_SECONDS": 0, "POLL_MAX_ATTEMPTS": 10},
                               "phone", sleep=lambda s: None, open_url=opened.append)
    finally:
        poller.stop()

    assert live is True
    assert opened == [url]


def test_new_challenge_url_is_opened_again() -> None:
    seen = set()
    opened = []

    for url in ("https://verify.example.com/a", "https://verify.example.com/a", "https://verify.example.com/b"):
        handle_event(AuthRequired(url=url), FakeBridge(), open_url=opened.append, seen_auth_urls=seen)

    assert opened == ["https://verify.example.com/a", "https://verify.example.com/b"]


class FakeCompanion:
    def __init__(self, running=False, executable="C:/webcast_mate/webcast_mate.exe", comes_up=True):
        self.running = running
        self.executable = executable
        self.comes_up = comes_up
        self.starts = 0

    def is_running(self):
        return self.running

    def start(self):
        self.starts += 1
        self.running = self.comes_up


def test_running_companion_is_left_alone() -> None:
    companion = FakeCompanion(running=True)
    sleeps = []

    ensure_companion_running(companion, {}, sleep=sleeps.append)

    assert companion.starts == 0
    assert sleeps == []


def test_companion_is_launched_and_given_time_to_settle() -> None:
    companion = FakeCompanion()
    sleeps = []

    ensure_companion_running(companion, {"COMPANION_SETTLE_SECONDS": 15}, sleep=sleeps.append)

    assert companion.starts == 1
    assert sleeps == [15]


def test_companion_that_never_comes_up() -> None:
    with pytest.raises(CompanionNotRunning):
        ensure_companion_running(FakeCompanion(comes_up=False), {}, sleep=lambda s: None)
    with pytest.raises(CompanionNotRunning):
        ensure_companion_running(FakeCompanion(executable=None), {}, sleep=lambda s: None)
