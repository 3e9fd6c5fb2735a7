class RelayError(Exception):
    """Base class for everything this package raises on purpose."""


# --- credential store ---

class CookieVaultError(RelayError):
    pass


class CredentialStoreUnavailable(CookieVaultError):
    pass


class MasterKeyUnwrapFailed(CookieVaultError):
    pass


class CookieDecryptPartialFailure(CookieVaultError):
    """A single cookie row could not be decrypted. Logged and skipped."""


class NoCookiesDecrypted(CookieVaultError):
    pass


# --- remote room session ---

class SessionError(RelayError):
    pass


class CookieHeaderMissing(SessionError):
    pass


class AuthChallengeRequired(SessionError):
    """The service wants the user to pass a security check at `url` first."""

    def __init__(self, url, message="live security verification required"):
        super().__init__(message)
        self.url = url


class SessionNetworkError(SessionError):
    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


# --- local encoder ---

class ObsBridgeError(RelayError):
    pass


class ControlSocketConfigNotFound(ObsBridgeError):
    pass


class ControlSocketUnreachable(ObsBridgeError):
    pass


class ConfigVerificationFailed(ObsBridgeError):
    pass


class ObsRequestFailed(ObsBridgeError):
    """A control-socket request was sent but OBS answered with an error or the link dropped."""


# --- companion app ---

class CompanionNotRunning(RelayError):
    """The companion app's streaming service is not up and could not be started."""
