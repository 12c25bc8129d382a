"""
Builds the service graph once at startup. Handlers receive it through
app.state rather than reaching for module-level singletons.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from database import Datastore, connect
from wastebolt.collectors import CollectorPool
from wastebolt.dispatcher import Dispatcher
from wastebolt.intake import RequestIntake
from wastebolt.jobs import BackgroundJobs
from wastebolt.lifecycle import CollectionStateMachine
from wastebolt.notifications import MessageChannel, Notifier, build_channel
from wastebolt.pricing import PricingEngine
from wastebolt.settings import Settings
from wastebolt.surge import SurgeController

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Services:
    settings: Settings
    store: Datastore
    clock: Callable[[], datetime]
    notifier: Notifier
    collectors: CollectorPool
    surge: SurgeController
    pricing: PricingEngine
    dispatcher: Dispatcher
    lifecycle: CollectionStateMachine
    intake: RequestIntake
    jobs: BackgroundJobs

    def start(self) -> None:
        if self.settings.enable_background_jobs:
            self.jobs.start()
        else:
            logger.info("Background jobs disabled")

    def shutdown(self) -> None:
        self.jobs.shutdown()
        self.notifier.shutdown(wait=True)
        self.store.close()


def build_services(
    settings: Settings,
    store: Optional[Datastore] = None,
    channel: Optional[MessageChannel] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Services:
    clock = clock or utcnow
    store = store or connect(
        settings.database_url,
        settings.database_name,
        retry_attempts=settings.io_retry_attempts,
        retry_base_s=settings.io_retry_base_s,
    )
    notifier = Notifier(
        channel or build_channel(settings.messaging_webhook_url, settings.messaging_timeout_s),
        workers=settings.notification_workers,
    )
    collectors = CollectorPool(store, settings, clock)
    surge = SurgeController(store, settings)
    pricing = PricingEngine(surge, settings)
    dispatcher = Dispatcher(store, notifier, settings, clock)
    lifecycle = CollectionStateMachine(store, notifier, settings, clock)
    intake = RequestIntake(store, pricing, dispatcher, notifier, settings, clock)

    jobs = BackgroundJobs()
    jobs.add("SurgeRecompute", settings.surge_interval_s, lambda: surge.recompute(clock()))
    jobs.add("PendingExpiry", settings.expiry_interval_s, lambda: dispatcher.expire_stale_requests(clock()))
    jobs.add("Redispatch", settings.redispatch_interval_s, lambda: dispatcher.redispatch_pending(clock()))

    return Services(
        settings=settings,
        store=store,
        clock=clock,
        notifier=notifier,
        collectors=collectors,
        surge=surge,
        pricing=pricing,
        dispatcher=dispatcher,
        lifecycle=lifecycle,
        intake=intake,
        jobs=jobs,
    )
