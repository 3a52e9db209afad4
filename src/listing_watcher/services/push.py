"""Push provider interface."""

import logging
from abc import ABC, abstractmethod

from listing_watcher.models.pydantic_models import DevicePlatform, PushOutcome, PushPayload, PushResult

logger = logging.getLogger(__name__)


class PushProvider(ABC):
    """Delivers one payload to one device token.

    Implementations return PushResult with ACK, TRANSIENT or PERMANENT, or
    raise ProviderDeliveryError; both forms are accepted by the dispatcher.
    """

    @abstractmethod
    async def send(
        self, device_token: str, platform: DevicePlatform, payload: PushPayload
    ) -> PushResult:
        ...


class LoggingPushProvider(PushProvider):
    """Default provider when no APNs/FCM SDK is configured: logs and accepts."""

    async def send(
        self, device_token: str, platform: DevicePlatform, payload: PushPayload
    ) -> PushResult:
        logger.info(
            "Push to %s device %s...: %s", platform.value, device_token[:8], payload.title
        )
        return PushResult(outcome=PushOutcome.ACK)
