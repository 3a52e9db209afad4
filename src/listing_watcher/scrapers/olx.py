"""OLX.pl scrape strategy."""

import re
from typing import Any, ClassVar
from urllib.parse import urlencode, urljoin

from listing_watcher.models.pydantic_models import RawListing, SearchJob
from listing_watcher.scrapers.base import BaseScraper, parse_currency, parse_price, slugify

# Offer URLs end in "-ID<token>.html"
_OFFER_ID_RE = re.compile(r"-ID([A-Za-z0-9]+)\.html")


class OLXScraper(BaseScraper):
    """Scraper for olx.pl.

    Login is optional: anonymous sessions can search, a logged-in session
    is needed to reveal most seller phone numbers.
    """

    service_key: ClassVar[str] = "olx"

    CARD_SELECTOR: ClassVar[str] = 'div[data-cy="l-card"]'
    RESULTS_CONTAINER_SELECTOR: ClassVar[str] = 'div[data-testid="listing-grid"]'
    NO_RESULTS_MARKERS: ClassVar[list[str]] = [
        "Nie znaleźliśmy żadnych wyników",
        'data-testid="empty-listing"',
    ]

    LOGIN_URL: ClassVar[str | None] = "https://www.olx.pl/konto/"
    LOGIN_USERNAME_SELECTOR: ClassVar[str] = 'input[name="username"]'
    LOGIN_PASSWORD_SELECTOR: ClassVar[str] = 'input[name="password"]'
    LOGIN_SUBMIT_SELECTOR: ClassVar[str] = 'button[data-testid="login-submit-button"]'
    LOGIN_SUCCESS_SELECTOR: ClassVar[str | None] = '[data-testid="myolx-link"]'

    PHONE_REVEAL_SELECTOR: ClassVar[str | None] = 'button[data-testid="ad-contact-phone"]'
    PHONE_SELECTOR: ClassVar[str | None] = 'a[data-testid="contact-phone"]'

    def build_search_url(self, job: SearchJob, page: int = 1) -> str:
        """Build ``/oferty[/<city>][/q-<phrase>]/`` with price and filter params."""
        base = job.base_url.rstrip("/")
        path = "/oferty"
        if job.location:
            path += f"/{slugify(job.location)}"
        phrase = slugify(" ".join(job.keywords))
        if phrase:
            path += f"/q-{phrase}"

        params: list[tuple[str, str]] = []
        if job.price_min is not None:
            params.append(("search[filter_float_price:from]", str(job.price_min)))
        if job.price_max is not None:
            params.append(("search[filter_float_price:to]", str(job.price_max)))
        for key, value in sorted(job.custom_filters.items()):
            if isinstance(value, (list, tuple)):
                for index, item in enumerate(value):
                    params.append((f"search[filter_enum_{key}][{index}]", str(item)))
            else:
                params.append((f"search[{key}]", str(value)))
        if page > 1:
            params.append(("page", str(page)))

        url = f"{base}{path}/"
        return f"{url}?{urlencode(params)}" if params else url

    def _parse_card(self, card: Any, page_url: str) -> RawListing | None:
        link = card.select_one("a[href]")
        title_el = card.select_one("h4, h6")
        if link is None or title_el is None:
            return None

        url = urljoin(page_url, link["href"])
        external_id = card.get("id") or None
        if external_id is None:
            match = _OFFER_ID_RE.search(url)
            external_id = match.group(1) if match else None

        price_el = card.select_one('[data-testid="ad-price"]')
        price_text = price_el.get_text(" ", strip=True) if price_el else None

        location_el = card.select_one('[data-testid="location-date"]')
        location = None
        if location_el:
            # "Warszawa, Mokotów - Odświeżono dzisiaj" → "Warszawa, Mokotów"
            location = location_el.get_text(" ", strip=True).split(" - ")[0].strip() or None

        image = card.select_one("img[src]")

        return RawListing(
            external_id=external_id,
            title=title_el.get_text(" ", strip=True),
            price=parse_price(price_text),
            currency=parse_currency(price_text),
            url=url,
            location=location,
            image_urls=[image["src"]] if image else [],
        )
