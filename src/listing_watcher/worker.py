"""Assembles the scheduler and its collaborators from settings."""

import logging

from sqlalchemy.orm import Session, sessionmaker

from listing_watcher.config import WatcherSettings, load_settings
from listing_watcher.database.engine import get_session_factory
from listing_watcher.services.credential_store import CredentialStore, load_fernet
from listing_watcher.services.dispatch_service import NotificationDispatcher
from listing_watcher.services.gate import GateRegistry
from listing_watcher.services.ingestion_service import IngestionService
from listing_watcher.services.push import LoggingPushProvider, PushProvider
from listing_watcher.services.run_service import SearchRunner
from listing_watcher.services.scheduler import Scheduler
from listing_watcher.services.session_manager import AutomationSessionManager

logger = logging.getLogger(__name__)


def build_credential_store(session_factory: sessionmaker[Session]) -> CredentialStore | None:
    """Credential store from WATCHER_ENCRYPTION_KEY, or None when no key is set.

    Without a store, services that require login fail with CredentialError
    and optional-login services search anonymously.
    """
    try:
        fernet = load_fernet()
    except RuntimeError as e:
        logger.warning("Credentials disabled: %s", e)
        return None
    return CredentialStore(session_factory, fernet)


def create_scheduler(
    settings: WatcherSettings | None = None,
    session_factory: sessionmaker[Session] | None = None,
    push_provider: PushProvider | None = None,
    credential_store: CredentialStore | None = None,
) -> Scheduler:
    """Wire session manager, ingestion, dispatch and scheduler together.

    Args:
        settings: Worker settings. Loaded from YAML if None.
        session_factory: Session factory. Process-wide factory if None.
        push_provider: Push provider. LoggingPushProvider if None.
        credential_store: Credential store. Built from the environment if None.

    Returns:
        A Scheduler ready to start().
    """
    settings = settings or load_settings()
    session_factory = session_factory or get_session_factory()
    if credential_store is None:
        credential_store = build_credential_store(session_factory)

    session_manager = AutomationSessionManager(
        settings.sessions,
        GateRegistry(settings.gate),
        credential_store=credential_store,
    )
    runner = SearchRunner(
        session_manager,
        IngestionService(session_factory),
        NotificationDispatcher(session_factory, push_provider or LoggingPushProvider(), settings.dispatch),
    )
    return Scheduler(
        session_factory,
        runner,
        settings.scheduler,
        session_manager=session_manager,
        credential_store=credential_store,
    )
