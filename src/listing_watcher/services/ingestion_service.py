"""Fingerprinting and deduplicated persistence of scraped listings."""

import hashlib
import logging
import re
from urllib.parse import urlsplit, urlunsplit

from sqlalchemy.orm import Session, sessionmaker

from listing_watcher.database.repository import ListingRepository
from listing_watcher.models.pydantic_models import IngestionResult, RawListing, SearchJob

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


def _normalize_text(value: str) -> str:
    return _WHITESPACE_RE.sub(" ", value).strip().lower()


def _normalize_url(url: str) -> str:
    """Drop query string and fragment; tracking params vary between scrapes."""
    parts = urlsplit(url.strip())
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path.rstrip("/"), "", ""))


def compute_fingerprint(service_id: int, record: RawListing) -> str:
    """Stable identity of a listing within its service.

    Uses ``service_id:external_id`` when the service exposes an id, otherwise
    the normalized ``title|price|url`` triple.
    """
    if record.external_id:
        source = f"{service_id}:{record.external_id.strip()}"
    else:
        price = "" if record.price is None else str(record.price)
        source = "|".join(
            [str(service_id), _normalize_text(record.title), price, _normalize_url(record.url)]
        )
    return hashlib.sha256(source.encode("utf-8")).hexdigest()


class IngestionService:
    """Turns one run's raw records into stored listings.

    Runs in a worker thread with its own database session. Uniqueness is
    enforced by the database, so repeated and concurrent ingestion of the
    same records never creates duplicate rows.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def ingest(self, job: SearchJob, records: list[RawListing]) -> IngestionResult:
        """Store new listings and report everything the run matched.

        Args:
            job: The search job that produced the records.
            records: Raw records in page order.

        Returns:
            IngestionResult with all matched listing ids and the globally new subset.
        """
        seen: set[str] = set()
        matched: list[int] = []
        new: list[int] = []

        with self._session_factory() as session:
            repo = ListingRepository(session)
            for record in records:
                fingerprint = compute_fingerprint(job.service_id, record)
                if fingerprint in seen:
                    continue
                seen.add(fingerprint)

                listing, created = repo.insert_if_absent(
                    job.service_id, fingerprint, record, search_config_id=job.config_id
                )
                matched.append(listing.id)
                if created:
                    new.append(listing.id)

        logger.info(
            "Ingested %d records for config %d: %d matched, %d new",
            len(records), job.config_id, len(matched), len(new),
        )
        return IngestionResult(matched_listing_ids=matched, new_listing_ids=new)
