"""Service layer for services and saved searches."""

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from listing_watcher.database.repository import SearchConfigRepository, ServiceRepository
from listing_watcher.errors import ConfigNotFoundError
from listing_watcher.models.pydantic_models import (
    SearchConfigCreate,
    SearchConfigRead,
    SearchConfigUpdate,
)
from listing_watcher.scrapers import SCRAPERS


class ServiceNotFoundError(Exception):
    """Raised when a marketplace service is not found."""

    pass


class SearchConfigService:
    """Create, edit and toggle saved searches.

    Callers notify the scheduler (``on_config_changed``) after any change.
    """

    def __init__(self, session: Session) -> None:
        self._session = session
        self._configs = SearchConfigRepository(session)
        self._services = ServiceRepository(session)

    def create_service(self, name: str, base_url: str, login_flow: str) -> int:
        """Register a marketplace. Returns the service id.

        Raises:
            ValueError: If no scrape strategy is registered for ``login_flow``,
                or a service with this name exists.
        """
        if login_flow not in SCRAPERS:
            raise ValueError(
                f"Unknown login flow {login_flow!r}; expected one of {sorted(SCRAPERS)}"
            )
        try:
            return self._services.create_service(name, base_url, login_flow).id
        except IntegrityError as e:
            self._session.rollback()
            raise ValueError(f"Service {name!r} already exists") from e

    def create_config(self, data: SearchConfigCreate) -> SearchConfigRead:
        """Create a saved search.

        Raises:
            ServiceNotFoundError: If the service doesn't exist.
        """
        if self._services.get_service(data.service_id) is None:
            raise ServiceNotFoundError(f"Service {data.service_id} not found")
        config = self._configs.create_config(data)
        return SearchConfigRead.model_validate(config)

    def get_config(self, config_id: int) -> SearchConfigRead:
        """Get one saved search.

        Raises:
            ConfigNotFoundError: If the config doesn't exist.
        """
        config = self._configs.get_config(config_id)
        if config is None:
            raise ConfigNotFoundError(config_id)
        return SearchConfigRead.model_validate(config)

    def get_configs(self, user_id: int | None = None, enabled_only: bool = False) -> list[SearchConfigRead]:
        return [
            SearchConfigRead.model_validate(config)
            for config in self._configs.get_configs(user_id=user_id, enabled_only=enabled_only)
        ]

    def update_config(self, config_id: int, data: SearchConfigUpdate) -> SearchConfigRead:
        """Apply a partial edit.

        Raises:
            ConfigNotFoundError: If the config doesn't exist.
            ValueError: If the edit leaves price_min above price_max.
        """
        config = self._configs.update_config(config_id, data)
        if config is None:
            raise ConfigNotFoundError(config_id)
        return SearchConfigRead.model_validate(config)

    def toggle_config(self, config_id: int) -> SearchConfigRead:
        """Flip the enabled flag. Re-enabling clears the auto-disable state.

        Raises:
            ConfigNotFoundError: If the config doesn't exist.
        """
        current = self.get_config(config_id)
        config = self._configs.set_enabled(config_id, not current.enabled)
        if config is None:
            raise ConfigNotFoundError(config_id)
        return SearchConfigRead.model_validate(config)
