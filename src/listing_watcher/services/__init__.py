"""Service layer for listing-watcher business logic."""

from listing_watcher.services.credential_store import CredentialStore
from listing_watcher.services.dispatch_service import NotificationDispatcher
from listing_watcher.services.gate import GateRegistry, ServiceGate
from listing_watcher.services.ingestion_service import IngestionService, compute_fingerprint
from listing_watcher.services.listing_service import ListingNotFoundError, ListingService
from listing_watcher.services.notification_service import (
    NotificationNotFoundError,
    NotificationService,
)
from listing_watcher.services.push import LoggingPushProvider, PushProvider
from listing_watcher.services.run_service import SearchRunner
from listing_watcher.services.scheduler import Scheduler, compute_backoff_delay, compute_next_run
from listing_watcher.services.search_config_service import SearchConfigService, ServiceNotFoundError
from listing_watcher.services.session_manager import AutomationSessionManager, SessionState

__all__ = [
    "AutomationSessionManager",
    "CredentialStore",
    "GateRegistry",
    "IngestionService",
    "ListingNotFoundError",
    "ListingService",
    "LoggingPushProvider",
    "NotificationDispatcher",
    "NotificationNotFoundError",
    "NotificationService",
    "PushProvider",
    "Scheduler",
    "SearchConfigService",
    "SearchRunner",
    "ServiceGate",
    "ServiceNotFoundError",
    "SessionState",
    "compute_backoff_delay",
    "compute_fingerprint",
    "compute_next_run",
]
