from types import SimpleNamespace

import pytest

from douyin_relay.errors import ConfigVerificationFailed, ObsRequestFailed
from douyin_relay.obs_profile import (
    ensure_profile,
    ensure_scene_collection,
    format_profile_name,
)


class ProfileOBS:
    """Fake bridge keeping OBS's profile list. `ignore_switches` makes the
    first N set_current_profile calls report OK without switching."""

    def __init__(self, profiles=("Untitled",), current="Untitled", ignore_switches=0, fail_calls=0):
        self.profiles = list(profiles)
        self.current = current
        self.ignore_switches = ignore_switches
        self.fail_calls = fail_calls
        self.connected = True
        self.reconnects = 0
        self.calls = []

    def ensure_reachable(self):
        self.reconnects += 1
        self.connected = True

    def call(self, method, *args):
        self.calls.append((method,) + args)
        if self.fail_calls > 0:
            self.fail_calls -= 1
            self.connected = False
            raise ObsRequestFailed(f"{method} failed: socket closed")
        if method == "get_profile_list":
            return SimpleNamespace(profiles=list(self.profiles), current_profile_name=self.current)
        if method == "create_profile":
            self.profiles.append(args[0])
            return None
        if method == "set_current_profile":
            if self.ignore_switches > 0:
                self.ignore_switches -= 1
            else:
                self.current = args[0]
            return None
        if method == "get_scene_collection_list":
            return SimpleNamespace(scene_collections=list(self.profiles),
                                   current_scene_collection_name=self.current)
        if method == "create_scene_collection":
            self.profiles.append(args[0])
            return None
        if method == "set_current_scene_collection":
            self.current = args[0]
            return None
        raise AssertionError(f"unexpected call {method}")

    def methods(self):
        return [c[0] for c in self.calls]


def test_creates_and_switches_missing_profile() -> None:
    obs = ProfileOBS()
    sleeps = []

    assert ensure_profile(obs, "Douyin Relay", sleep=sleeps.append) == "Douyin_Relay"

    assert obs.current == "Douyin_Relay"
    assert obs.methods() == ["get_profile_list", "create_profile", "set_current_profile", "get_profile_list"]
    assert sleeps == [0.6, 0.8]


def test_existing_current_profile_needs_no_changes() -> None:
    obs = ProfileOBS(profiles=("Untitled", "relay"), current="relay")

    ensure_profile(obs, "relay", sleep=lambda s: None)

    assert obs.methods() == ["get_profile_list", "get_profile_list"]


def test_unconfirmed_switch_is_retried_until_verified() -> None:
    obs = ProfileOBS(profiles=("Untitled", "relay"), ignore_switches=2)
    sleeps = []

    assert ensure_profile(obs, "relay", sleep=sleeps.append) == "relay"

    assert obs.methods().count("set_current_profile") == 3
    backoffs = [s for s in sleeps if s != 0.8]
    assert backoffs == [0.5, 1.0]


def test_switch_never_confirmed_fails_after_budget() -> None:
    obs = ProfileOBS(profiles=("Untitled", "relay"), ignore_switches=10)

    with pytest.raises(ConfigVerificationFailed):
        ensure_profile(obs, "relay", sleep=lambda s: None)
    assert obs.methods().count("set_current_profile") == 3


def test_dropped_connection_is_reestablished_between_attempts() -> None:
    obs = ProfileOBS(fail_calls=2)

    ensure_profile(obs, "relay", sleep=lambda s: None)

    assert obs.reconnects == 2
    assert obs.current == "relay"


def test_scene_collection_uses_larger_budget_and_backoff() -> None:
    obs = ProfileOBS(fail_calls=10)
    sleeps = []

    with pytest.raises(ConfigVerificationFailed):
        ensure_scene_collection(obs, "relay scenes", sleep=sleeps.append)

    assert obs.methods() == ["get_scene_collection_list"] * 5
    assert sleeps == pytest.approx([0.8, 1.6, 2.4, 3.2])


def test_format_profile_name() -> None:
    assert format_profile_name("My Stream") == "My_Stream"
    assert format_profile_name("抖音 直播/主播") == "抖音_直播主播"
    assert format_profile_name("a:b*c?d") == "abcd"
    assert format_profile_name("keep-this_one") == "keep-this_one"
    assert format_profile_name("") == ""
