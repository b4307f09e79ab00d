"""
services.py — Builds and owns the long-lived service objects.

    store ─┐
           ├─▶ controller ─▶ coordinator ─▶ resolver ─▶ directory
    feed ──┘                     │
                                 └─▶ dispatchers {mobile_push, web_push}

STORAGE_BACKEND selects the repositories:
    memory    — in-process dicts (development, tests)
    database  — SQLAlchemy async engine from DATABASE_URL
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from backend.app.core.config import Settings, get_settings
from backend.app.core.database import create_engine, init_db, make_session_factory
from backend.app.lifecycle.controller import WarningLifecycleController
from backend.app.lifecycle.store import InMemoryWarningRepository, WarningRepository, WarningStore
from backend.app.notifications.channels import build_dispatchers
from backend.app.notifications.channels.base import ChannelDispatcher
from backend.app.notifications.coordinator import DeliveryCoordinator
from backend.app.notifications.directory import InMemoryRecipientDirectory, RecipientDirectory
from backend.app.notifications.feed import WarningFeed
from backend.app.notifications.ledger import DeliveryLedger
from backend.app.notifications.models import ChannelKind
from backend.app.notifications.resolver import SubscriberResolver

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: WarningStore
    directory: RecipientDirectory
    dispatchers: Dict[ChannelKind, ChannelDispatcher]
    coordinator: DeliveryCoordinator
    controller: WarningLifecycleController
    feed: WarningFeed
    engine: Optional[AsyncEngine] = None

    async def close(self) -> None:
        """Finish in-flight dispatches, then release provider and database connections."""
        await self.controller.drain()
        for dispatcher in self.dispatchers.values():
            await dispatcher.close()
        self.feed.close_all()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("Services closed")


async def build_services(
    settings: Optional[Settings] = None,
    *,
    dispatchers: Optional[Dict[ChannelKind, ChannelDispatcher]] = None,
    engine: Optional[AsyncEngine] = None,
) -> Services:
    """
    Wire the service graph for ``settings``.

    ``dispatchers`` and ``engine`` override the ones built from settings;
    tests pass fakes here.
    """
    settings = settings or get_settings()
    backend = settings.STORAGE_BACKEND.lower()

    repository: WarningRepository
    directory: RecipientDirectory
    if backend == "database":
        engine = engine or create_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
        await init_db(engine)
        session_factory = make_session_factory(engine)
        # Imported here so the memory backend never loads the ORM tables
        from backend.app.storage.sql_recipients import SqlRecipientDirectory
        from backend.app.storage.sql_warnings import SqlWarningRepository

        repository = SqlWarningRepository(session_factory)
        directory = SqlRecipientDirectory(session_factory)
    elif backend == "memory":
        repository = InMemoryWarningRepository()
        directory = InMemoryRecipientDirectory()
    else:
        raise ValueError(f"Unknown STORAGE_BACKEND '{settings.STORAGE_BACKEND}' (memory | database)")

    store = WarningStore(repository)
    dispatchers = dispatchers if dispatchers is not None else build_dispatchers(settings)
    coordinator = DeliveryCoordinator(
        SubscriberResolver(directory, radius_km=settings.DISPATCH_RADIUS_KM),
        directory,
        dispatchers,
        DeliveryLedger(),
    )
    feed = WarningFeed(queue_size=settings.FEED_QUEUE_SIZE)
    controller = WarningLifecycleController(
        store,
        coordinator,
        feed,
        background=settings.DISPATCH_IN_BACKGROUND,
        report_limit=settings.DELIVERY_REPORT_LIMIT,
        base_url=settings.PUBLIC_BASE_URL,
    )

    logger.info(
        "Services ready: storage=%s, radius=%.0f km, channels=%s",
        backend, settings.DISPATCH_RADIUS_KM, [k.value for k in dispatchers],
    )
    return Services(
        settings=settings,
        store=store,
        directory=directory,
        dispatchers=dispatchers,
        coordinator=coordinator,
        controller=controller,
        feed=feed,
        engine=engine if backend == "database" else None,
    )
