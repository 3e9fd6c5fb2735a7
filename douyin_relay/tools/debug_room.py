#!/usr/bin/env python3
import sys
import json
import argparse

import requests

from douyin_relay.auth import read_cookie_header
from douyin_relay.config import cookie_cache_path, default_config_dir
from douyin_relay.douyin_api import MODES, get_mode, split_rtmp_url


def fetch_raw(mode, cookie, timeout=8):
    mode = get_mode(mode)
    method, url, data = mode.build_request()
    r = requests.request(method, url, data=data or None, headers=mode.build_headers(url, cookie), timeout=timeout)
    return r.status_code, r.text


def main():
    parser = argparse.ArgumentParser(description="Dump the latest-room response for each mode.")
    parser.add_argument("modes", nargs="*", default=sorted(MODES))
    parser.add_argument("--config-dir", default=default_config_dir())
    args = parser.parse_args()

    cookie = read_cookie_header(cookie_cache_path(args.config_dir))
    if not cookie:
        print("No cached cookies; run douyin-relay-setup first.")
        return 1

    for name in args.modes:
        print(f"--- {name} ---")
        try:
            status, text = fetch_raw(name, cookie)
        except requests.exceptions.RequestException as e:
            print(f"  request error: {e}")
            continue
        print(f"  HTTP {status}, {len(text)} bytes")
        try:
            body = json.loads(text)
        except ValueError:
            print(f"  not JSON: {text[:200]!r}")
            continue
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        print(f"  status_code={body.get('status_code')} status_msg={body.get('status_msg')!r}")
        print(f"  room status={data.get('status')} stream_id={data.get('stream_id_str')}")
        parts = split_rtmp_url((data.get("stream_url") or {}).get("rtmp_push_url"))
        # the key is a credential, show only the server
        print(f"  push server={parts[0] if parts else None}")
        if (body.get("extra") or {}).get("web_auth_address"):
            print(f"  auth challenge: {body['extra']['web_auth_address']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
