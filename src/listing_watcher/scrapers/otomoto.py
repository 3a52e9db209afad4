"""OTOMOTO.pl scrape strategy."""

from typing import Any, ClassVar
from urllib.parse import urlencode, urljoin

from listing_watcher.models.pydantic_models import RawListing, SearchJob
from listing_watcher.scrapers.base import BaseScraper, parse_currency, parse_price, slugify


class OtomotoScraper(BaseScraper):
    """Scraper for otomoto.pl passenger cars. Searches anonymously."""

    service_key: ClassVar[str] = "otomoto"

    CARD_SELECTOR: ClassVar[str] = "article[data-id]"
    RESULTS_CONTAINER_SELECTOR: ClassVar[str] = 'div[data-testid="search-results"]'
    NO_RESULTS_MARKERS: ClassVar[list[str]] = [
        "Brak wyników",
        'data-testid="no-results"',
    ]

    PHONE_REVEAL_SELECTOR: ClassVar[str | None] = 'button[data-testid="show-phone"]'
    PHONE_SELECTOR: ClassVar[str | None] = 'a[href^="tel:"]'

    CATEGORY_PATH: ClassVar[str] = "/osobowe"

    def build_search_url(self, job: SearchJob, page: int = 1) -> str:
        """Build ``/osobowe[/<city>][/q-<phrase>]`` with search[...] params.

        Custom filters map as:
        - ``{"fuel_type": "diesel"}`` → ``search[filter_enum_fuel_type]=diesel``
        - ``{"year": {"from": 2018}}`` → ``search[filter_float_year:from]=2018``
        """
        base = job.base_url.rstrip("/")
        path = self.CATEGORY_PATH
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
            if isinstance(value, dict):
                for bound in ("from", "to"):
                    if bound in value:
                        params.append((f"search[filter_float_{key}:{bound}]", str(value[bound])))
            else:
                params.append((f"search[filter_enum_{key}]", str(value)))
        if page > 1:
            params.append(("page", str(page)))

        url = f"{base}{path}"
        return f"{url}?{urlencode(params)}" if params else url

    def _parse_card(self, card: Any, page_url: str) -> RawListing | None:
        link = card.select_one("h1 a[href], h2 a[href]")
        if link is None:
            return None

        price_el = card.select_one('[data-testid="ad-price"], h3')
        price_text = price_el.get_text(" ", strip=True) if price_el else None
        location_el = card.select_one('[data-testid="location"]')
        images = [img["src"] for img in card.select("img[src]")][:3]

        return RawListing(
            external_id=card.get("data-id") or None,
            title=link.get_text(" ", strip=True),
            price=parse_price(price_text),
            currency=parse_currency(price_text),
            url=urljoin(page_url, link["href"]),
            location=location_el.get_text(" ", strip=True) if location_el else None,
            image_urls=images,
        )
