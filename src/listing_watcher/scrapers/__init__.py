"""Scraper modules and the strategy registry."""

from listing_watcher.scrapers.base import BaseScraper, ScraperConfig
from listing_watcher.scrapers.browser import BrowserConfig, BrowserManager
from listing_watcher.scrapers.olx import OLXScraper
from listing_watcher.scrapers.otomoto import OtomotoScraper

SCRAPERS: dict[str, type[BaseScraper]] = {
    OLXScraper.service_key: OLXScraper,
    OtomotoScraper.service_key: OtomotoScraper,
}


def get_scraper_class(login_flow: str) -> type[BaseScraper]:
    """Get the strategy class registered for a service's login flow.

    Raises:
        ValueError: If no strategy is registered under that key.
    """
    if login_flow not in SCRAPERS:
        raise ValueError(f"No scraper available for {login_flow}")
    return SCRAPERS[login_flow]


__all__ = [
    "BaseScraper",
    "BrowserConfig",
    "BrowserManager",
    "OLXScraper",
    "OtomotoScraper",
    "SCRAPERS",
    "ScraperConfig",
    "get_scraper_class",
]
