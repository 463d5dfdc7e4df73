"""
Composition root

Builds the long-lived collaborators once per process (Stripe client,
notifier, ZCTA loader, services-catalog cache, change publisher) and
hangs them on app.state. Routers reach them through get_container().
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request

from .cache import MemoizedLoader, TTLCache
from .config import SERVICES_CACHE_TTL_SECONDS, ZCTA_DATA_PATH
from .domain.coverage.resolver import CoverageResolver
from .domain.coverage.zcta import load_zcta_dataset
from .domain.payments.stripe_service import StripeService, stripe_service
from .realtime import ChangePublisher
from .redis_client import async_redis_factory
from .services.notification_service import NotificationService

logger = logging.getLogger(__name__)


@dataclass
class Container:
    stripe: StripeService
    notifier: NotificationService
    zcta_loader: MemoizedLoader
    resolver: CoverageResolver
    services_cache: TTLCache
    publisher: ChangePublisher
    redis_factory: Optional[Callable] = None
    retry_delay: float = 0.5


def build_container(
    zcta_path: str = ZCTA_DATA_PATH,
    stripe: Optional[StripeService] = None,
    notifier: Optional[NotificationService] = None,
    redis_factory: Optional[Callable] = None,
    use_redis: bool = True,
    retry_delay: float = 0.5,
) -> Container:
    if redis_factory is None and use_redis:
        redis_factory = async_redis_factory()
    zcta_loader = MemoizedLoader(lambda: load_zcta_dataset(zcta_path), name="ZCTA dataset")
    container = Container(
        stripe=stripe or stripe_service,
        notifier=notifier or NotificationService(retry_delay=retry_delay),
        zcta_loader=zcta_loader,
        resolver=CoverageResolver(zcta_loader),
        services_cache=TTLCache(SERVICES_CACHE_TTL_SECONDS),
        publisher=ChangePublisher(redis_factory),
        redis_factory=redis_factory,
        retry_delay=retry_delay,
    )
    logger.info(
        f"✅ Container ready (stripe={'on' if container.stripe.is_available() else 'off'}, "
        f"realtime={'on' if redis_factory else 'off'})"
    )
    return container


def get_container(request: Request) -> Container:
    return request.app.state.container
