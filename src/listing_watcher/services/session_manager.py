"""Pool of browser sessions per (service, credential) and the execute entry point."""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from listing_watcher.config import SessionSettings
from listing_watcher.errors import (
    AutomationError,
    BlockedError,
    CredentialError,
    CredentialNotFoundError,
    ParseError,
    TransientError,
)
from listing_watcher.models.pydantic_models import Credential, ScrapeOutcome, SearchJob
from listing_watcher.scrapers import SCRAPERS, BaseScraper, BrowserConfig, BrowserManager, ScraperConfig
from listing_watcher.services.credential_store import CredentialStore
from listing_watcher.services.gate import GateRegistry, ServiceGate

logger = logging.getLogger(__name__)

SessionKey = tuple[int, int | None]


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    LOGGING_IN = "logging_in"
    READY = "ready"
    EXECUTING = "executing"
    EVICTED = "evicted"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.UNAUTHENTICATED: frozenset({SessionState.LOGGING_IN, SessionState.EVICTED}),
    SessionState.LOGGING_IN: frozenset({SessionState.READY, SessionState.EVICTED}),
    SessionState.READY: frozenset({SessionState.EXECUTING, SessionState.EVICTED}),
    SessionState.EXECUTING: frozenset({SessionState.READY, SessionState.EVICTED}),
    SessionState.EVICTED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """A session was moved along an edge the state machine does not have."""


@dataclass(eq=False)
class AutomationSession:
    """One browser context, optionally logged in, used by one execution at a time."""

    key: SessionKey
    service_name: str
    context: Any
    page: Any
    created_at: float
    last_used_at: float
    use_count: int = 0
    state: SessionState = SessionState.UNAUTHENTICATED
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Session {self.key}: {self.state.value} -> {new_state.value} not allowed"
            )
        self.state = new_state

    def expiry_reason(self, now: float, settings: SessionSettings) -> str | None:
        """Why this session should be retired, or None while it is still usable."""
        if now - self.last_used_at > settings.idle_timeout_seconds:
            return "idle"
        if now - self.created_at > settings.max_age_seconds:
            return "max age"
        if self.use_count >= settings.max_uses:
            return "max uses"
        return None


class AutomationSessionManager:
    """Executes scrape jobs on pooled, reusable browser sessions.

    Sessions are keyed by (service_id, credential_id); services that are
    searched anonymously share the (service_id, None) session. Each call to
    ``execute`` holds the service gate's concurrency slot for its whole
    duration, then the session's lock, so one session never runs two
    executions at once.

    Automation failures come back as ``ScrapeOutcome.error``; only
    cancellation propagates.
    """

    def __init__(
        self,
        settings: SessionSettings,
        gates: GateRegistry,
        credential_store: CredentialStore | None = None,
        browser: BrowserManager | None = None,
        scrapers: dict[str, type[BaseScraper]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._gates = gates
        self._credential_store = credential_store
        self._browser = browser or BrowserManager(BrowserConfig.from_settings(settings))
        self._scrapers = scrapers if scrapers is not None else SCRAPERS
        self._clock = clock
        self._sessions: dict[SessionKey, AutomationSession] = {}
        self._pool_lock = asyncio.Lock()

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def get_session(self, key: SessionKey) -> AutomationSession | None:
        return self._sessions.get(key)

    async def execute(self, job: SearchJob) -> ScrapeOutcome:
        """Run one scrape for a search job.

        Returns:
            ScrapeOutcome with records on success, or with a typed
            AutomationError. Never raises for automation failures.

        Raises:
            asyncio.CancelledError: The run was cancelled; its session is evicted.
        """
        scraper_cls = self._scrapers.get(job.login_flow)
        if scraper_cls is None:
            return ScrapeOutcome(
                error=ParseError(f"no strategy for login flow {job.login_flow!r}", service=job.service_name)
            )
        scraper = scraper_cls(ScraperConfig.from_settings(self._settings))

        try:
            credential = await self._resolve_credential(job, scraper)
        except CredentialError as e:
            return ScrapeOutcome(error=e)
        credential_id = credential.credential_id if credential else None

        gate = self._gates.gate_for(job.service_name)
        async with gate.slot():
            try:
                session = await self._checkout((job.service_id, credential_id), job.service_name)
            except PlaywrightError as e:
                logger.warning("Could not open browser context for %s: %s", job.service_name, e)
                return ScrapeOutcome(
                    error=TransientError(f"browser unavailable: {e}", service=job.service_name),
                    credential_id=credential_id,
                )
            try:
                outcome = await self._run(session, scraper, job, credential, gate)
            finally:
                session.lock.release()

        outcome.credential_id = credential_id
        return outcome

    async def _resolve_credential(self, job: SearchJob, scraper: BaseScraper) -> Credential | None:
        if not scraper.supports_login or self._credential_store is None:
            if scraper.login_required:
                raise CredentialError("no credential store configured", service=job.service_name)
            return None

        try:
            return await asyncio.to_thread(
                self._credential_store.get_decrypted_credential, job.user_id, job.service_id
            )
        except CredentialNotFoundError as e:
            if scraper.login_required:
                raise CredentialError(str(e), service=job.service_name) from e
            logger.debug("No credential for user %d on %s, searching anonymously", job.user_id, job.service_name)
            return None

    async def _checkout(self, key: SessionKey, service_name: str) -> AutomationSession:
        """Return the pooled session for ``key`` with its lock held.

        Sessions evicted while we waited, or expired on arrival, are
        replaced by a fresh one.
        """
        while True:
            session = await self._get_or_create(key, service_name)
            await session.lock.acquire()
            if session.state is SessionState.EVICTED:
                session.lock.release()
                continue
            reason = session.expiry_reason(self._clock(), self._settings)
            if reason is not None:
                await self._evict(session, reason)
                session.lock.release()
                continue
            return session

    async def _get_or_create(self, key: SessionKey, service_name: str) -> AutomationSession:
        async with self._pool_lock:
            session = self._sessions.get(key)
            if session is not None:
                return session

            context = await self._browser.new_context()
            try:
                page = await context.new_page()
            except PlaywrightError:
                await context.close()
                raise
            now = self._clock()
            session = AutomationSession(
                key=key,
                service_name=service_name,
                context=context,
                page=page,
                created_at=now,
                last_used_at=now,
            )
            self._sessions[key] = session
            logger.debug("Opened session %s for %s", key, service_name)
            return session

    async def _run(
        self,
        session: AutomationSession,
        scraper: BaseScraper,
        job: SearchJob,
        credential: Credential | None,
        gate: ServiceGate,
    ) -> ScrapeOutcome:
        service = job.service_name
        try:
            if session.state is SessionState.UNAUTHENTICATED:
                session.transition(SessionState.LOGGING_IN)
                if credential is not None:
                    logger.info("Logging in to %s as credential %d", service, credential.credential_id)
                    await scraper.login(session.page, credential, gate)
                session.transition(SessionState.READY)

            session.transition(SessionState.EXECUTING)
            records, pages = await scraper.scrape(session.page, job, gate)
        except asyncio.CancelledError:
            await self._evict(session, "cancelled")
            raise
        except (CredentialError, BlockedError) as e:
            await self._evict(session, e.kind.value)
            return ScrapeOutcome(error=e)
        except AutomationError as e:
            await self._settle(session)
            return ScrapeOutcome(error=e)
        except PlaywrightTimeoutError as e:
            await self._settle(session)
            return ScrapeOutcome(error=TransientError(f"timeout: {e}", service=service))
        except PlaywrightError as e:
            await self._evict(session, "browser error")
            return ScrapeOutcome(error=TransientError(f"browser error: {e}", service=service))
        except Exception as e:
            # Page state after a strategy bug is unknown
            logger.exception("Strategy %s failed for config %d", type(scraper).__name__, job.config_id)
            await self._evict(session, "strategy error")
            return ScrapeOutcome(error=ParseError(f"strategy error: {e!r}", service=service))
        finally:
            session.last_used_at = self._clock()

        session.use_count += 1
        session.transition(SessionState.READY)
        logger.info(
            "Scraped %d records over %d pages for config %d on %s",
            len(records), pages, job.config_id, service,
        )
        return ScrapeOutcome(records=records, pages_scraped=pages)

    async def _settle(self, session: AutomationSession) -> None:
        """Return a session to READY after a recoverable failure.

        A failure during login leaves the session in an unknown auth state,
        so it is evicted instead.
        """
        if session.state is SessionState.EXECUTING:
            session.use_count += 1
            session.transition(SessionState.READY)
        elif session.state is not SessionState.EVICTED:
            await self._evict(session, "failed during login")

    async def _evict(self, session: AutomationSession, reason: str) -> None:
        if session.state is SessionState.EVICTED:
            return
        session.transition(SessionState.EVICTED)
        if self._sessions.get(session.key) is session:
            del self._sessions[session.key]
        logger.info("Evicted session %s for %s (%s)", session.key, session.service_name, reason)
        try:
            await session.context.close()
        except PlaywrightError as e:
            logger.debug("Closing context for %s failed: %s", session.key, e)

    async def sweep(self) -> int:
        """Evict idle or expired sessions not currently in use.

        Returns:
            Number of sessions evicted.
        """
        now = self._clock()
        evicted = 0
        for session in list(self._sessions.values()):
            if session.lock.locked():
                continue
            reason = session.expiry_reason(now, self._settings)
            if reason is None:
                continue
            async with session.lock:
                await self._evict(session, reason)
            evicted += 1
        return evicted

    async def close(self) -> None:
        """Evict every session and shut the browser down."""
        for session in list(self._sessions.values()):
            await self._evict(session, "shutdown")
        await self._browser.stop()
