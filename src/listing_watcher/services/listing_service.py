"""Service layer for listing operations."""

from sqlalchemy.orm import Session

from listing_watcher.database.repository import ListingRepository
from listing_watcher.models.pydantic_models import ListingRead


class ListingNotFoundError(Exception):
    """Raised when a listing is not found."""

    pass


class ListingService:
    """Listings a user was notified about, and their moderation flags.

    Returns Pydantic models instead of ORM objects.
    """

    def __init__(self, session: Session) -> None:
        """Initialize with database session.

        Args:
            session: SQLAlchemy session instance.
        """
        self._session = session
        self._repo = ListingRepository(session)

    def get_listings(
        self,
        user_id: int,
        include_spam: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ListingRead]:
        """Get a user's listings, newest first.

        Args:
            user_id: Owner of the notifications the listings came through.
            include_spam: Include listings the user marked as spam.
            limit: Maximum number of results.
            offset: Number of results to skip.
        """
        listings = self._repo.get_listings_for_user(
            user_id, include_spam=include_spam, limit=limit, offset=offset
        )
        return [ListingRead.model_validate(listing) for listing in listings]

    def get_listing(self, listing_id: int) -> ListingRead | None:
        listing = self._repo.get_listing(listing_id)
        return ListingRead.model_validate(listing) if listing else None

    def mark_spam(self, listing_id: int, is_spam: bool = True) -> ListingRead:
        """Set or clear the spam flag.

        Raises:
            ListingNotFoundError: If listing doesn't exist.
        """
        return self._moderate(listing_id, is_spam=is_spam)

    def mark_success(self, listing_id: int, is_success: bool = True) -> ListingRead:
        """Set or clear the success flag (user closed a deal on it).

        Raises:
            ListingNotFoundError: If listing doesn't exist.
        """
        return self._moderate(listing_id, is_success=is_success)

    def _moderate(
        self, listing_id: int, is_spam: bool | None = None, is_success: bool | None = None
    ) -> ListingRead:
        listing = self._repo.set_moderation(listing_id, is_spam=is_spam, is_success=is_success)
        if listing is None:
            raise ListingNotFoundError(f"Listing {listing_id} not found")
        return ListingRead.model_validate(listing)
