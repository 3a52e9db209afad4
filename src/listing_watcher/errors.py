"""Error taxonomy shared by the automation, scheduling and dispatch layers."""

from enum import Enum


class ErrorKind(str, Enum):
    """Failure classification used for scheduling decisions."""

    TRANSIENT = "transient"
    CREDENTIAL = "credential"
    BLOCKED = "blocked"
    PARSE = "parse"


class WatcherError(Exception):
    """Base class for all listing-watcher errors."""


class AutomationError(WatcherError):
    """A scrape failed. Returned as a value from the session manager."""

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(self, message: str, *, service: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.service = service

    def __str__(self) -> str:
        if self.service:
            return f"[{self.service}] {self.message}"
        return self.message


class TransientError(AutomationError):
    """Timeout or network failure; the normal cadence retries it."""

    kind = ErrorKind.TRANSIENT


class CredentialError(AutomationError):
    """Login failed or no usable credential is stored."""

    kind = ErrorKind.CREDENTIAL


class BlockedError(AutomationError):
    """The site answered with an anti-bot interstitial or captcha."""

    kind = ErrorKind.BLOCKED


class ParseError(AutomationError):
    """The page structure no longer matches the extraction strategy."""

    kind = ErrorKind.PARSE


class ProviderDeliveryError(WatcherError):
    """Push delivery failed for one device."""

    def __init__(self, message: str, *, permanent: bool = False) -> None:
        super().__init__(message)
        self.permanent = permanent


class CredentialNotFoundError(WatcherError):
    """No credential stored for the (user, service) pair."""

    def __init__(self, user_id: int, service_id: int) -> None:
        super().__init__(f"No credential for user {user_id} on service {service_id}")
        self.user_id = user_id
        self.service_id = service_id


class ConfigNotFoundError(WatcherError):
    """Search config does not exist."""

    def __init__(self, config_id: int) -> None:
        super().__init__(f"Search config {config_id} not found")
        self.config_id = config_id
