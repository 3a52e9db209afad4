"""Shared Playwright browser with stealth, handing out isolated contexts."""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any

from playwright.async_api import (
    Browser,
    BrowserContext,
    Playwright,
    async_playwright,
)
from playwright_stealth import Stealth  # type: ignore[import-untyped]

from listing_watcher.config import SessionSettings

DEFAULT_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
]

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
]


@dataclass
class BrowserConfig:
    """Configuration for the shared browser."""

    headless: bool = True
    locale: str = "pl-PL"
    timezone_id: str = "Europe/Warsaw"
    viewport_width: int = 1280
    viewport_height: int = 720
    navigation_timeout_ms: int = 30000
    user_agents: list[str] = field(default_factory=lambda: DEFAULT_USER_AGENTS.copy())
    navigator_platform: str = "Win32"

    @classmethod
    def from_settings(cls, settings: SessionSettings) -> "BrowserConfig":
        return cls(
            headless=settings.headless,
            locale=settings.locale,
            timezone_id=settings.timezone_id,
            navigation_timeout_ms=settings.navigation_timeout_ms,
        )


class BrowserManager:
    """Owns one Chromium process; every automation session gets its own context.

    Contexts keep cookies apart, so a logged-in session for one credential
    never leaks into another.

    Usage:
        async with BrowserManager(config) as manager:
            context = await manager.new_context()
    """

    def __init__(self, config: BrowserConfig | None = None) -> None:
        self._config = config or BrowserConfig()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._stealth_cm: Any = None
        self._start_lock = asyncio.Lock()
        self._started: bool = False

    async def __aenter__(self) -> "BrowserManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

    async def start(self) -> None:
        """Launch the browser once; concurrent callers wait for the first."""
        async with self._start_lock:
            if self._started:
                return

            languages = (self._config.locale, self._config.locale.split("-")[0], "en")
            stealth = Stealth(
                navigator_languages_override=languages,
                navigator_platform_override=self._config.navigator_platform,
            )
            self._stealth_cm = stealth.use_async(async_playwright())
            self._playwright = await self._stealth_cm.__aenter__()
            self._browser = await self._playwright.chromium.launch(
                headless=self._config.headless,
                args=LAUNCH_ARGS,
            )
            self._started = True

    async def stop(self) -> None:
        """Close the browser and the Playwright driver."""
        if not self._started:
            return

        if self._browser is not None:
            await self._browser.close()
            self._browser = None

        if self._stealth_cm is not None:
            await self._stealth_cm.__aexit__(None, None, None)
            self._stealth_cm = None
            self._playwright = None

        self._started = False

    async def new_context(self) -> BrowserContext:
        """Create an isolated context with a randomly chosen user agent."""
        await self.start()
        if self._browser is None:
            raise RuntimeError("Browser not initialized")

        context = await self._browser.new_context(
            viewport={
                "width": self._config.viewport_width,
                "height": self._config.viewport_height,
            },
            locale=self._config.locale,
            timezone_id=self._config.timezone_id,
            user_agent=random.choice(self._config.user_agents),
        )
        context.set_default_timeout(self._config.navigation_timeout_ms)
        return context

    @property
    def is_started(self) -> bool:
        return self._started
