import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List

from .models import DataDomain

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[DataDomain], Awaitable[None]]


class UpdateChannel:
    """In-process fan-out of "domain has a new generation" notices."""

    def __init__(self) -> None:
        self._subscribers: Dict[DataDomain, List[UpdateCallback]] = defaultdict(list)

    def subscribe(self, domain: DataDomain, callback: UpdateCallback) -> Callable[[], None]:
        self._subscribers[domain].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers[domain]:
                self._subscribers[domain].remove(callback)

        return unsubscribe

    def subscriber_count(self, domain: DataDomain) -> int:
        return len(self._subscribers[domain])

    async def publish(self, domain: DataDomain) -> None:
        for callback in list(self._subscribers[domain]):
            try:
                await callback(domain)
            except Exception:
                logger.exception("Update subscriber failed for %s", domain.value)
