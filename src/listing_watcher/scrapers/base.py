"""Base class for per-service scrape strategies."""

import asyncio
import logging
import random
import re
import unicodedata
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from listing_watcher.config import SessionSettings
from listing_watcher.errors import BlockedError, CredentialError, ParseError
from listing_watcher.models.pydantic_models import Credential, RawListing, SearchJob
from listing_watcher.scrapers.phone import parse_phone_number

if TYPE_CHECKING:
    from listing_watcher.services.gate import ServiceGate

logger = logging.getLogger(__name__)

_PRICE_RE = re.compile(r"\d[\d\s]*")
_POLISH_CHARS = str.maketrans({"ł": "l", "Ł": "L"})


@dataclass
class ScraperConfig:
    """Per-run bounds and human-like pacing."""

    max_pages: int = 3
    max_items: int = 50
    min_delay: float = 1.0
    max_delay: float = 3.0
    max_retries: int = 2
    retry_delay: float = 3.0
    fetch_phones: bool = False

    @classmethod
    def from_settings(cls, settings: SessionSettings) -> "ScraperConfig":
        return cls(
            max_pages=settings.max_pages,
            max_items=settings.max_items,
            min_delay=settings.min_delay,
            max_delay=settings.max_delay,
            fetch_phones=settings.fetch_phones,
        )


def slugify(value: str) -> str:
    """Lowercase ASCII slug with dashes, as marketplaces use in paths."""
    value = unicodedata.normalize("NFKD", value.translate(_POLISH_CHARS))
    value = value.encode("ascii", "ignore").decode("ascii").lower()
    return re.sub(r"[^a-z0-9]+", "-", value).strip("-")


def parse_price(text: str | None) -> int | None:
    """Extract the integer amount from text like ``"12 500 zł"`` or ``"1 250,50 zł"``."""
    if not text:
        return None
    match = _PRICE_RE.search(text)
    if not match:
        return None
    digits = re.sub(r"\D", "", match.group(0))
    return int(digits) if digits else None


def parse_currency(text: str | None, default: str = "PLN") -> str:
    if not text:
        return default
    lowered = text.lower()
    if "€" in text or "eur" in lowered:
        return "EUR"
    if "$" in text or "usd" in lowered:
        return "USD"
    return default


class BaseScraper(ABC):
    """Strategy for one marketplace.

    Provides the shared run loop:
    - paging with per-run page and item caps
    - anti-bot detection on every page
    - optional login for services that support it
    - human-like pacing (delays, scrolling, cookie consent)
    - navigation retries on timeouts with tenacity

    Subclasses must implement:
    - service_key: Registry key, matching Service.login_flow
    - build_search_url(): Translate a search job into the service's query
    - _parse_card(): Turn one result card into a RawListing
    """

    service_key: ClassVar[str]

    CARD_SELECTOR: ClassVar[str]
    RESULTS_CONTAINER_SELECTOR: ClassVar[str]
    NO_RESULTS_MARKERS: ClassVar[list[str]] = []

    BLOCK_MARKERS: ClassVar[list[str]] = [
        "g-recaptcha",
        "h-captcha",
        "px-captcha",
        "cf-challenge",
        "challenge-platform",
        "captcha-delivery",
        "are you a robot",
        "jesteś robotem",
    ]

    COOKIE_CONSENT_SELECTORS: ClassVar[list[str]] = [
        "#onetrust-accept-btn-handler",
        'button[data-testid="accept-cookies-button"]',
        'button:has-text("Akceptuję")',
        'button:has-text("Zaakceptuj wszystkie")',
        'button:has-text("Accept All")',
    ]

    # Login form; services without a login flow leave LOGIN_URL unset
    login_required: ClassVar[bool] = False
    LOGIN_URL: ClassVar[str | None] = None
    LOGIN_USERNAME_SELECTOR: ClassVar[str] = 'input[name="username"]'
    LOGIN_PASSWORD_SELECTOR: ClassVar[str] = 'input[name="password"]'
    LOGIN_SUBMIT_SELECTOR: ClassVar[str] = 'button[type="submit"]'
    LOGIN_SUCCESS_SELECTOR: ClassVar[str | None] = None
    LOGIN_TIMEOUT_MS: ClassVar[int] = 15000

    # Phone reveal on detail pages
    PHONE_REVEAL_SELECTOR: ClassVar[str | None] = None
    PHONE_SELECTOR: ClassVar[str | None] = None

    def __init__(self, config: ScraperConfig | None = None) -> None:
        self._config = config or ScraperConfig()

    @property
    def config(self) -> ScraperConfig:
        return self._config

    @property
    def supports_login(self) -> bool:
        return self.LOGIN_URL is not None

    @abstractmethod
    def build_search_url(self, job: SearchJob, page: int = 1) -> str:
        """Translate keywords, price range, location and custom filters into a URL.

        Args:
            job: Search job snapshot.
            page: Page number (1-indexed).

        Returns:
            Full URL for the search results page.
        """
        ...

    @abstractmethod
    def _parse_card(self, card: Any, page_url: str) -> RawListing | None:
        """Parse one result card element.

        Args:
            card: BeautifulSoup element matched by CARD_SELECTOR.
            page_url: URL of the results page, for resolving relative links.

        Returns:
            RawListing, or None for promoted/placeholder cards.
        """
        ...

    # ========== PARSING ==========

    def parse_listing_cards(self, html: str, page_url: str) -> list[RawListing]:
        """Parse all listing cards on a results page.

        Raises:
            ParseError: Cards were found but none could be parsed, or the
                page has neither a results container nor a no-results marker.
        """
        soup = BeautifulSoup(html, "html.parser")
        cards = soup.select(self.CARD_SELECTOR)

        if not cards:
            if not self.has_results_structure(soup, html):
                raise ParseError(
                    "results container not found; page layout may have changed",
                    service=self.service_key,
                )
            return []

        listings: list[RawListing] = []
        for card in cards:
            try:
                listing = self._parse_card(card, page_url)
            except (ValueError, KeyError, AttributeError):
                logger.debug("Skipping unparseable card on %s", page_url, exc_info=True)
                continue
            if listing is not None:
                listings.append(listing)

        if not listings:
            raise ParseError(
                f"{len(cards)} cards found but none parsed", service=self.service_key
            )
        return listings

    def has_results_structure(self, soup: BeautifulSoup, html: str) -> bool:
        if soup.select_one(self.RESULTS_CONTAINER_SELECTOR) is not None:
            return True
        lowered = html.lower()
        return any(marker.lower() in lowered for marker in self.NO_RESULTS_MARKERS)

    def detect_block(self, html: str) -> bool:
        """Check a page for anti-bot interstitials or captcha widgets."""
        lowered = html.lower()
        return any(marker in lowered for marker in self.BLOCK_MARKERS)

    # ========== HUMAN-LIKE BEHAVIOUR ==========

    async def random_delay(self, min_sec: float | None = None, max_sec: float | None = None) -> None:
        min_delay = min_sec if min_sec is not None else self._config.min_delay
        max_delay = max_sec if max_sec is not None else self._config.max_delay
        await asyncio.sleep(random.uniform(min_delay, max_delay))

    async def human_scroll(
        self,
        page: Page,
        scroll_count: int = 3,
        min_delta: int = 300,
        max_delta: int = 600,
    ) -> None:
        for _ in range(scroll_count):
            await page.mouse.wheel(0, random.randint(min_delta, max_delta))
            await asyncio.sleep(random.uniform(0.3, 0.8))

    async def handle_cookie_consent(self, page: Page) -> bool:
        """Click the first visible consent button. Returns True if one was clicked."""
        for selector in self.COOKIE_CONSENT_SELECTORS:
            try:
                btn = page.locator(selector).first
                if await btn.is_visible(timeout=2000):
                    await btn.click()
                    await asyncio.sleep(random.uniform(0.5, 1.5))
                    return True
            except PlaywrightError:
                continue
        return False

    # ========== NETWORK ==========

    async def navigate_to(self, page: Page, url: str, gate: "ServiceGate") -> str:
        """Load a URL through the gate and return the page HTML.

        Timeouts are retried a bounded number of times; the final timeout
        propagates for the session manager to classify.
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(PlaywrightTimeoutError),
            stop=stop_after_attempt(self._config.max_retries),
            wait=wait_fixed(self._config.retry_delay),
            reraise=True,
        ):
            with attempt:
                await gate.acquire_action()
                await page.goto(url, wait_until="domcontentloaded")
                return await page.content()
        raise RuntimeError("Retry logic failed unexpectedly")

    async def login(self, page: Page, credential: Credential, gate: "ServiceGate") -> None:
        """Submit the login form and wait for the logged-in marker.

        Raises:
            BlockedError: A challenge page appeared instead.
            CredentialError: The logged-in marker never appeared.
        """
        if self.LOGIN_URL is None:
            return

        html = await self.navigate_to(page, self.LOGIN_URL, gate)
        if self.detect_block(html):
            raise BlockedError("challenge page on login", service=self.service_key)
        await self.handle_cookie_consent(page)

        await page.fill(self.LOGIN_USERNAME_SELECTOR, credential.username)
        await self.random_delay(0.3, 0.9)
        await page.fill(self.LOGIN_PASSWORD_SELECTOR, credential.password)
        await self.random_delay(0.3, 0.9)
        await gate.acquire_action()
        await page.click(self.LOGIN_SUBMIT_SELECTOR)

        if self.LOGIN_SUCCESS_SELECTOR is None:
            return
        try:
            await page.wait_for_selector(self.LOGIN_SUCCESS_SELECTOR, timeout=self.LOGIN_TIMEOUT_MS)
        except PlaywrightTimeoutError as e:
            if self.detect_block(await page.content()):
                raise BlockedError("challenge page after login", service=self.service_key) from e
            raise CredentialError("login rejected", service=self.service_key) from e

    async def extract_phone(self, page: Page, url: str, gate: "ServiceGate") -> str | None:
        """Reveal and read the seller phone on a detail page, if the service supports it."""
        if self.PHONE_REVEAL_SELECTOR is None or self.PHONE_SELECTOR is None:
            return None

        html = await self.navigate_to(page, url, gate)
        if self.detect_block(html):
            raise BlockedError("challenge page on detail", service=self.service_key)

        try:
            reveal = await page.query_selector(self.PHONE_REVEAL_SELECTOR)
            if reveal is None:
                return None
            await reveal.click()
            element = await page.wait_for_selector(self.PHONE_SELECTOR, timeout=5000)
            if element is None:
                return None
            raw = await element.get_attribute("href") or await element.text_content()
        except PlaywrightTimeoutError:
            logger.debug("Phone did not appear on %s", url)
            return None

        return parse_phone_number(raw) if raw else None

    # ========== RUN ==========

    async def scrape(self, page: Page, job: SearchJob, gate: "ServiceGate") -> tuple[list[RawListing], int]:
        """Scrape up to max_pages result pages and max_items listings.

        Returns:
            Tuple of (records, pages scraped).

        Raises:
            BlockedError: Anti-bot page detected.
            ParseError: Page structure not recognised.
            PlaywrightError: Navigation failures, classified by the caller.
        """
        records: list[RawListing] = []
        seen_urls: set[str] = set()
        pages_scraped = 0

        for page_num in range(1, self._config.max_pages + 1):
            url = self.build_search_url(job, page_num)
            html = await self.navigate_to(page, url, gate)
            pages_scraped += 1

            if self.detect_block(html):
                raise BlockedError(f"challenge page on {url}", service=self.service_key)

            if page_num == 1:
                await self.handle_cookie_consent(page)
            await self.human_scroll(page)

            cards = self.parse_listing_cards(html, url)
            if not cards:
                break

            added = 0
            for card in cards:
                if card.url in seen_urls:
                    continue
                seen_urls.add(card.url)
                records.append(card)
                added += 1
                if len(records) >= self._config.max_items:
                    break

            # A page with nothing new means the site repeats the last page
            if added == 0 or len(records) >= self._config.max_items:
                break

            await self.random_delay()

        if self._config.fetch_phones:
            records = await self._attach_phones(page, records, gate)

        return records, pages_scraped

    async def _attach_phones(
        self, page: Page, records: list[RawListing], gate: "ServiceGate"
    ) -> list[RawListing]:
        enriched: list[RawListing] = []
        for record in records:
            if record.phone is None:
                phone = await self.extract_phone(page, record.url, gate)
                if phone:
                    record = record.model_copy(update={"phone": phone})
                await self.random_delay()
            enriched.append(record)
        return enriched
