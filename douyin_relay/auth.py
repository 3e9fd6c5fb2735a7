import os
import re
import json
import base64
import shutil
import logging
import sqlite3
import tempfile
import time
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from playwright.sync_api import sync_playwright, TimeoutError, Error as PlaywrightError

from .errors import (
    CookieDecryptPartialFailure,
    CredentialStoreUnavailable,
    MasterKeyUnwrapFailed,
    NoCookiesDecrypted,
)

logger = logging.getLogger(__name__)

# Local State stores the wrapped key as base64("DPAPI" + blob)
MASTER_KEY_HEADER_LEN = 5
V10_MARKER = b"v10"
NONCE_LEN = 12
TAG_LEN = 16

LOGIN_URL = "https://www.douyin.com/user/self"
LOGGED_IN_TITLE_MARK = "的抖音 - 抖音"

_NON_PRINTABLE = re.compile(rb"[^\x20-\x7e]")


if os.name == "nt":
    import ctypes
    from ctypes import wintypes

    class _DataBlob(ctypes.Structure):
        _fields_ = [
            ("cbData", wintypes.DWORD),
            ("pbData", ctypes.POINTER(ctypes.c_ubyte)),
        ]

    _CRYPTPROTECT_UI_FORBIDDEN = 0x01

    _crypt32 = ctypes.windll.crypt32
    _kernel32 = ctypes.windll.kernel32
    _crypt32.CryptUnprotectData.argtypes = [
        ctypes.POINTER(_DataBlob),
        ctypes.POINTER(wintypes.LPWSTR),
        ctypes.POINTER(_DataBlob),
        ctypes.c_void_p,
        ctypes.c_void_p,
        wintypes.DWORD,
        ctypes.POINTER(_DataBlob),
    ]
    _crypt32.CryptUnprotectData.restype = wintypes.BOOL
    _kernel32.LocalFree.argtypes = [ctypes.c_void_p]
    _kernel32.LocalFree.restype = ctypes.c_void_p

    def dpapi_unprotect(raw: bytes) -> bytes:
        """Unwraps a blob protected for the current Windows user."""
        src = bytes(raw or b"")
        buf = (ctypes.c_ubyte * max(len(src), 1)).from_buffer_copy(src or b"\0")
        in_blob = _DataBlob(len(src), ctypes.cast(buf, ctypes.POINTER(ctypes.c_ubyte)))
        out_blob = _DataBlob()
        descr = wintypes.LPWSTR()
        if not _crypt32.CryptUnprotectData(
            ctypes.byref(in_blob),
            ctypes.byref(descr),
            None,
            None,
            None,
            _CRYPTPROTECT_UI_FORBIDDEN,
            ctypes.byref(out_blob),
        ):
            raise OSError(f"CryptUnprotectData failed: {ctypes.WinError()}")
        try:
            if not out_blob.pbData or int(out_blob.cbData) <= 0:
                return b""
            return ctypes.string_at(out_blob.pbData, int(out_blob.cbData))
        finally:
            if out_blob.pbData:
                _kernel32.LocalFree(out_blob.pbData)
            if descr:
                _kernel32.LocalFree(descr)
else:

    def dpapi_unprotect(raw: bytes) -> bytes:
        raise OSError("DPAPI is only available on Windows.")


@dataclass(frozen=True)
class CookieRecord:
    name: str
    value: str
    domain: str
    path: str = "/"


@dataclass(frozen=True)
class CookieSet:
    cookies: List[CookieRecord]
    header: str

    def __len__(self):
        return len(self.cookies)


def join_cookie_header(cookies) -> str:
    return "; ".join(f"{c.name}={c.value}" for c in cookies)


def sanitize_plaintext(raw: bytes) -> str:
    """Drops anything outside printable ASCII; partial-decrypt garbage ends up there."""
    return _NON_PRINTABLE.sub(b"", raw).decode("ascii")


def decrypt_v10(encrypted: bytes, master_key: bytes) -> str:
    """'v10' + 12-byte nonce + ciphertext + 16-byte tag, AES-256-GCM."""
    if len(encrypted) < len(V10_MARKER) + NONCE_LEN + TAG_LEN:
        raise CookieDecryptPartialFailure("v10 value too short")
    nonce = encrypted[3:15]
    ciphertext = encrypted[15:-TAG_LEN]
    tag = encrypted[-TAG_LEN:]
    try:
        plain = AESGCM(master_key).decrypt(nonce, ciphertext + tag, None)
    except (InvalidTag, ValueError) as e:
        raise CookieDecryptPartialFailure(f"AES-GCM decrypt failed: {e.__class__.__name__}") from e
    return sanitize_plaintext(plain)


def decrypt_cookie_value(encrypted: bytes, master_key: bytes, unprotect: Callable[[bytes], bytes] = dpapi_unprotect) -> str:
    if encrypted[:3] == V10_MARKER:
        return decrypt_v10(encrypted, master_key)
    # legacy rows were DPAPI-protected one by one
    try:
        plain = unprotect(encrypted)
    except Exception as e:
        raise CookieDecryptPartialFailure(f"legacy unprotect failed: {e}") from e
    return sanitize_plaintext(plain)


def unwrap_master_key(local_state_path, unprotect: Callable[[bytes], bytes] = dpapi_unprotect) -> bytes:
    try:
        with open(local_state_path, "r", encoding="utf-8") as f:
            state = json.load(f)
        encoded = state["os_crypt"]["encrypted_key"]
        wrapped = base64.b64decode(encoded)
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise MasterKeyUnwrapFailed(f"no usable encrypted_key in Local State: {e}") from e
    if len(wrapped) <= MASTER_KEY_HEADER_LEN:
        raise MasterKeyUnwrapFailed("encrypted_key is too short")
    try:
        key = unprotect(wrapped[MASTER_KEY_HEADER_LEN:])
    except Exception as e:
        raise MasterKeyUnwrapFailed(f"OS unprotect refused the master key: {e}") from e
    if len(key) != 32:
        raise MasterKeyUnwrapFailed(f"unwrapped master key has {len(key)} bytes, expected 32")
    return key


class CookieVault:
    """
    Recovers the companion app's cookies from its encrypted Chromium store.
    Works on a private snapshot of the database; the live file is never opened.
    """

    def __init__(self, cookie_db_path, local_state_path, cache_path, unprotect: Callable[[bytes], bytes] = dpapi_unprotect, temp_dir=None):
        self.cookie_db_path = cookie_db_path
        self.local_state_path = local_state_path
        self.cache_path = cache_path
        self.unprotect = unprotect
        self.temp_dir = temp_dir

    def extract_cookies(self, domain_filter="%.douyin.com") -> CookieSet:
        for p in (self.cookie_db_path, self.local_state_path):
            if not os.path.exists(p):
                raise CredentialStoreUnavailable(f"companion credential store not found: {p}")

        work_dir = tempfile.mkdtemp(prefix="douyin_relay_", dir=self.temp_dir)
        try:
            snapshot = os.path.join(work_dir, "cookies_snapshot.db")
            try:
                shutil.copyfile(self.cookie_db_path, snapshot)
            except OSError as e:
                raise CredentialStoreUnavailable(f"could not snapshot cookie database: {e}") from e

            master_key = unwrap_master_key(self.local_state_path, self.unprotect)
            rows = self._read_rows(snapshot, domain_filter)

            cookies = []
            for name, encrypted, host_key, path, plain in rows:
                try:
                    if encrypted:
                        value = decrypt_cookie_value(bytes(encrypted), master_key, self.unprotect)
                    else:
                        value = plain or ""
                except CookieDecryptPartialFailure as e:
                    logger.warning("Dropping cookie %r for %s: %s", name, host_key, e)
                    continue
                if not value:
                    logger.debug("Cookie %r decrypted to an empty value, skipped", name)
                    continue
                cookies.append(CookieRecord(name=name, value=value, domain=host_key, path=path or "/"))

            if not cookies:
                raise NoCookiesDecrypted(f"none of {len(rows)} cookie row(s) could be decrypted")
            if len(cookies) < len(rows):
                logger.info("Decrypted %d of %d cookie rows", len(cookies), len(rows))

            header = join_cookie_header(cookies)
            write_cookie_header(self.cache_path, header)
            logger.info("Extracted %d cookies for %s into %s", len(cookies), domain_filter, self.cache_path)
            return CookieSet(cookies=cookies, header=header)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    @staticmethod
    def _read_rows(db_path, domain_filter):
        uri = Path(db_path).resolve().as_uri() + "?mode=ro"
        try:
            with closing(sqlite3.connect(uri, uri=True)) as conn:
                cur = conn.execute(
                    "SELECT name, encrypted_value, host_key, path, value FROM cookies WHERE host_key LIKE ?",
                    (domain_filter,),
                )
                return cur.fetchall()
        except sqlite3.Error as e:
            raise CredentialStoreUnavailable(f"cookie database unreadable: {e}") from e


def write_cookie_header(cache_path, header: str):
    os.makedirs(os.path.dirname(os.path.abspath(cache_path)), exist_ok=True)
    with open(cache_path, "w", encoding="utf-8") as f:
        f.write(header)
    try:
        os.chmod(cache_path, 0o600)
    except OSError:
        logger.debug("Could not restrict permissions on %s", cache_path)


def read_cookie_header(cache_path) -> Optional[str]:
    """Returns the cached cookie header, or None when there is none yet."""
    if not os.path.exists(cache_path):
        return None
    with open(cache_path, "r", encoding="utf-8") as f:
        raw = f.read().strip()
    return raw or None


def login_with_browser(cache_path, timeout=120) -> Optional[CookieSet]:
    """
    Opens a browser window on the Douyin profile page and waits for the user
    to log in. Saves the resulting cookie header to cache_path.
    """
    logger.info("Opening browser for Douyin login (waiting up to %ds)...", timeout)
    with sync_playwright() as p:
        browser = None
        try:
            browser = p.chromium.launch(headless=False)
            context = browser.new_context()
            page = context.new_page()
            page.goto(LOGIN_URL, timeout=60000)

            deadline = time.monotonic() + timeout
            while time.monotonic() < deadline:
                if page.is_closed():
                    logger.warning("Login window was closed before login completed")
                    return None
                if LOGGED_IN_TITLE_MARK in (page.title() or ""):
                    break
                page.wait_for_timeout(1000)
            else:
                logger.warning("Login timed out after %ds", timeout)
                return None

            cookies = [
                CookieRecord(name=c["name"], value=c["value"], domain=c.get("domain", ""), path=c.get("path", "/"))
                for c in context.cookies()
                if c.get("domain", "").endswith("douyin.com")
            ]
            if not cookies:
                logger.warning("Logged in, but no douyin.com cookies were set")
                return None
            header = join_cookie_header(cookies)
            write_cookie_header(cache_path, header)
            logger.info("Login successful, %d cookies saved to %s", len(cookies), cache_path)
            return CookieSet(cookies=cookies, header=header)
        except TimeoutError:
            logger.error("Login page did not load in time")
            return None
        except PlaywrightError as e:
            # closing the window mid-wait surfaces as a generic playwright error
            logger.warning("Browser login aborted: %s", e)
            return None
        finally:
            if browser is not None and browser.is_connected():
                browser.close()


if __name__ == "__main__":
    from .config import companion_paths, cookie_cache_path, default_config_dir

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    paths = companion_paths()
    vault = CookieVault(paths["cookies"], paths["local_state"], cookie_cache_path(default_config_dir()))
    result = vault.extract_cookies()
    print(f"Extracted {len(result)} cookie(s): {', '.join(c.name for c in result.cookies)}")
