"""Wiring of one runtime instance of every component."""

from dataclasses import dataclass, field

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from media_relay.coalescer import DownloadCoalescer
from media_relay.content_store import ContentStore
from media_relay.core.config import Settings
from media_relay.core.db import get_session_factory
from media_relay.core.logging import get_logger
from media_relay.database.store import RecordStore
from media_relay.deferred import DeferredDownloadQueue, DeferredNotifier
from media_relay.downloader import AttachmentRefresher, DirectFileFetcher, DownloadServiceClient
from media_relay.ledger import UrlLedger
from media_relay.operations import (
    OperationObserver,
    OperationTracker,
    RedisObserver,
    StuckOperationSweeper,
    WebhookObserver,
)
from media_relay.pipeline.service import IngestService, MediaDownloader
from media_relay.pipeline.throttle import UserCooldown
from media_relay.storage import LocalDiskStore, S3ObjectStore, build_default_chain
from media_relay.transcoder import SubprocessTranscoder, Transcoder, default_command_builder

logger = get_logger()


@dataclass
class Runtime:
    """Everything a process needs to serve ingest requests."""

    settings: Settings
    tracker: OperationTracker
    coalescer: DownloadCoalescer
    store: ContentStore
    local_store: LocalDiskStore
    service: IngestService
    sweeper: StuckOperationSweeper
    record_store: RecordStore | None = None
    ledger: UrlLedger | None = None
    deferred_queue: DeferredDownloadQueue | None = None
    observers: list[OperationObserver] = field(default_factory=list)

    async def close(self) -> None:
        """Stop the background loops and release observer connections."""
        self.sweeper.stop()
        if self.deferred_queue is not None:
            self.deferred_queue.stop()
        await self.tracker.drain()
        for observer in self.observers:
            close = getattr(observer, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning(
                    "observer_close_failed", observer=type(observer).__name__, error=str(e)
                )


def default_observers(settings: Settings) -> list[OperationObserver]:
    observers: list[OperationObserver] = [
        RedisObserver.from_url(settings.REDIS_URL, settings.OPERATIONS_CHANNEL)
    ]
    if settings.OBSERVER_WEBHOOK_URL:
        observers.append(
            WebhookObserver(settings.OBSERVER_WEBHOOK_URL, timeout=settings.OBSERVER_TIMEOUT)
        )
    return observers


def build_runtime(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    observers: list[OperationObserver] | None = None,
    object_store: S3ObjectStore | None = None,
    downloader: MediaDownloader | None = None,
    transcoder: Transcoder | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
    deferred_notifier: DeferredNotifier | None = None,
) -> Runtime:
    """Build one instance of every component from settings.

    Args:
        settings: Application settings
        session_factory: Database sessions, defaults to the shared factory
        observers: Operation observers, defaults to Redis plus the webhook
        object_store: Remote store, built from settings when configured
        downloader: Download service client override
        transcoder: Transcoder override
        http_transport: httpx transport shared by the HTTP boundaries
        deferred_notifier: Told when a deferred download completes or gives up

    Returns:
        Runtime holding the wired components
    """
    session_factory = session_factory or get_session_factory()
    record_store = RecordStore(session_factory) if session_factory is not None else None
    ledger = (
        UrlLedger(record_store, cache_ttl=settings.LEDGER_CACHE_TTL_SECONDS)
        if record_store is not None
        else None
    )

    if observers is None:
        observers = default_observers(settings)
    tracker = OperationTracker(
        record_store=record_store,
        observers=observers,
        history_limit=settings.OPERATIONS_HISTORY_LIMIT,
    )
    sweeper = StuckOperationSweeper(
        tracker,
        record_store=record_store,
        threshold_minutes=settings.STUCK_OPERATION_MINUTES,
        interval_seconds=settings.STUCK_SWEEP_INTERVAL_SECONDS,
    )

    if object_store is None and settings.remote_store_configured:
        object_store = S3ObjectStore.from_settings(settings)
    local_store = LocalDiskStore(settings.STORAGE_PATH)
    chain = build_default_chain(
        local_store,
        settings.LOCAL_BASE_URL,
        settings.INLINE_UPLOAD_LIMIT,
        object_store=object_store,
    )
    store = ContentStore(chain, local_store, remote=object_store)

    coalescer = DownloadCoalescer(ledger, max_concurrent=settings.MAX_CONCURRENT_DOWNLOADS)
    deferred_queue = None
    if settings.DEFERRED_QUEUE_PATH:
        deferred_queue = DeferredDownloadQueue(
            settings.DEFERRED_QUEUE_PATH,
            notifier=deferred_notifier,
            interval_seconds=settings.DEFERRED_RETRY_INTERVAL_SECONDS,
            max_retries=settings.DEFERRED_MAX_RETRIES,
            retention_hours=settings.DEFERRED_RETENTION_HOURS,
        )
    refresher = None
    if settings.CHAT_BOT_TOKEN:
        refresher = AttachmentRefresher(
            settings.CHAT_API_BASE_URL, settings.CHAT_BOT_TOKEN, transport=http_transport
        )

    service = IngestService(
        tracker=tracker,
        coalescer=coalescer,
        ledger=ledger,
        store=store,
        downloader=downloader
        or DownloadServiceClient(
            settings.DOWNLOAD_SERVICE_URL,
            timeout=settings.DOWNLOAD_TIMEOUT,
            file_timeout=settings.FILE_DOWNLOAD_TIMEOUT,
            transport=http_transport,
        ),
        transcoder=transcoder
        or SubprocessTranscoder(
            default_command_builder(settings.FFMPEG_PATH, settings.GIFSICLE_PATH),
            timeout=settings.TRANSCODE_TIMEOUT,
        ),
        settings=settings,
        refresher=refresher,
        file_fetcher=DirectFileFetcher(
            timeout=settings.FILE_DOWNLOAD_TIMEOUT, transport=http_transport
        ),
        cooldown=UserCooldown(settings.RATE_LIMIT_COOLDOWN_SECONDS),
        deferred_queue=deferred_queue,
    )
    if deferred_queue is not None:
        deferred_queue.processor = service.replay_deferred

    logger.info(
        "runtime_built",
        persistent=record_store is not None,
        remote_store=object_store is not None,
        deferred_queue=deferred_queue is not None,
        observers=[type(o).__name__ for o in observers],
    )
    return Runtime(
        settings=settings,
        tracker=tracker,
        coalescer=coalescer,
        store=store,
        local_store=local_store,
        service=service,
        sweeper=sweeper,
        record_store=record_store,
        ledger=ledger,
        deferred_queue=deferred_queue,
        observers=list(observers),
    )

