"""Ingest pipeline tying fetch, dedupe, transform and delivery together."""

from dataclasses import replace
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import urlparse

from media_relay.coalescer import AlreadyProcessed, DownloadCoalescer, FetchOptions
from media_relay.content_store import ContentStore
from media_relay.content_store.models import ArtifactKind, normalize_extension
from media_relay.core.config import Settings
from media_relay.core.errors import (
    DeferredError,
    RateLimitError,
    StaleResourceError,
    ValidationError,
)
from media_relay.core.hashing import hash_bytes, hash_with_discriminator
from media_relay.core.logging import get_logger, operation_context
from media_relay.deferred import DeferredDownloadQueue, DeferredRequest
from media_relay.downloader import (
    AttachmentRefresher,
    DirectFileFetcher,
    DownloadConstraints,
    DownloadedFile,
    SizeLimits,
    detect_kind,
    is_attachment_expired,
    is_attachment_url,
    validate_attachment,
    validate_signature,
    validate_url,
)
from media_relay.downloader.validation import IMAGE_EXTENSIONS, VIDEO_EXTENSIONS
from media_relay.ledger import LedgerEntry, UrlLedger
from media_relay.operations import OperationTracker, OperationType
from media_relay.pipeline.models import DeliveredArtifact, IngestRequest, IngestResult
from media_relay.pipeline.throttle import UserCooldown
from media_relay.storage.models import DeliveryMethod, Local
from media_relay.transcoder import Transcoder, TransformOptions, transcode_bytes

logger = get_logger()

_DIRECT_EXTENSIONS = VIDEO_EXTENSIONS | IMAGE_EXTENSIONS | {".gif"}


class MediaDownloader(Protocol):
    async def fetch(
        self, url: str, constraints: DownloadConstraints | None = None
    ) -> DownloadedFile | list[DownloadedFile]: ...


def is_direct_file_url(url: str) -> bool:
    """Attachments and links straight to a media file skip the download service."""
    if is_attachment_url(url):
        return True
    path = urlparse(url).path.lower()
    return any(path.endswith(ext) for ext in _DIRECT_EXTENSIONS)


class IngestService:
    """Runs ingest requests end to end under operation tracking.

    Every request gets an operation. Failures mark it as errored and are
    re-raised unchanged, and the ledger is only written after a successful
    delivery. A user starting requests faster than the cooldown allows is
    refused before an operation is created. When a deferred queue is set, a
    URL the download service rate limits is parked there and the caller gets
    a ``DeferredError`` instead.
    """

    def __init__(
        self,
        tracker: OperationTracker,
        coalescer: DownloadCoalescer,
        ledger: UrlLedger | None,
        store: ContentStore,
        downloader: MediaDownloader,
        transcoder: Transcoder,
        settings: Settings,
        refresher: AttachmentRefresher | None = None,
        file_fetcher: DirectFileFetcher | None = None,
        cooldown: UserCooldown | None = None,
        deferred_queue: DeferredDownloadQueue | None = None,
    ):
        self.tracker = tracker
        self.coalescer = coalescer
        self.ledger = ledger
        self.store = store
        self.downloader = downloader
        self.transcoder = transcoder
        self.settings = settings
        self.refresher = refresher
        self.cooldown = cooldown
        self.deferred_queue = deferred_queue
        self.file_fetcher = file_fetcher or DirectFileFetcher(
            timeout=settings.FILE_DOWNLOAD_TIMEOUT
        )
        self.limits = SizeLimits(
            max_video_size=settings.MAX_VIDEO_SIZE,
            max_image_size=settings.MAX_IMAGE_SIZE,
        )

    def _is_admin(self, request: IngestRequest) -> bool:
        return request.is_admin or self.settings.is_admin(request.user_id)

    def _throttle(self, request: IngestRequest) -> None:
        if self.cooldown is None or request.deferred:
            return
        self.cooldown.check(request.user_id, is_admin=self._is_admin(request))

    async def ingest_url(self, request: IngestRequest) -> IngestResult:
        """Fetch media behind a URL and deliver it, or serve it from the ledger.

        Raises:
            ThrottledError: If the user is still cooling down
            DeferredError: If the request was rate limited and parked for later
            MediaRelayError: Any other failure, after the operation is marked as error
        """
        if request.source_url is None:
            raise ValidationError("a source URL is required")
        self._throttle(request)

        discriminator = request.options.discriminator()
        operation_id = await self.tracker.create(
            request.operation_type,
            user_id=request.user_id,
            username=request.username,
            context={"original_url": request.source_url, "options": discriminator},
        )
        await self.tracker.start(operation_id)

        with operation_context(operation_id, user_id=request.user_id):
            try:
                url = validate_url(request.source_url)
                fetch_options = FetchOptions(
                    skip_cache=request.skip_cache,
                    expected_kind=request.kind_hint.value if request.kind_hint else None,
                    modifiers=discriminator or None,
                )

                async def produce() -> DownloadedFile | list[DownloadedFile]:
                    return await self._download(url, request)

                await self.tracker.log_step(
                    operation_id, "download", "running", metadata={"url": url}
                )
                fetched = await self.coalescer.fetch(url, produce, fetch_options)

                if isinstance(fetched, AlreadyProcessed):
                    cached = await self._serve_cached(
                        operation_id, url, fetched.entry, discriminator
                    )
                    if cached is not None:
                        return cached
                    fetched = await self.coalescer.fetch(
                        url, produce, replace(fetch_options, skip_cache=True)
                    )

                files = fetched if isinstance(fetched, list) else [fetched]
                for downloaded in files:
                    self._check_size(downloaded.size, downloaded.kind, request)
                await self.tracker.log_step(
                    operation_id,
                    "download",
                    "success",
                    metadata={"files": len(files), "size": sum(f.size for f in files)},
                )

                artifacts = [
                    await self._produce(
                        operation_id,
                        downloaded.data,
                        downloaded.kind,
                        downloaded.extension,
                        request.options,
                        inline_channel=request.inline_channel,
                        user_id=request.user_id,
                    )
                    for downloaded in files
                ]

                await self._record(url, artifacts[0], request.user_id, discriminator)
                result = IngestResult(operation_id=operation_id, artifacts=artifacts)
                await self.tracker.finish(operation_id, file_size=result.total_size)
                logger.info(
                    "ingest_completed",
                    url=url[:80],
                    artifacts=len(artifacts),
                    reused=[artifact.reused for artifact in artifacts],
                )
                return result
            except RateLimitError as e:
                deferred = await self._defer(request)
                await self.tracker.fail(operation_id, deferred or e)
                if deferred is None:
                    raise
                raise deferred from e
            except Exception as e:
                await self.tracker.fail(operation_id, e)
                raise

    async def _defer(self, request: IngestRequest) -> DeferredError | None:
        """Park a rate limited URL on the deferred queue, if it can be replayed."""
        if (
            self.deferred_queue is None
            or request.deferred
            or request.source_url is None
            or not request.options.is_identity
        ):
            return None
        item = await self.deferred_queue.add(
            request.source_url,
            user_id=request.user_id,
            username=request.username,
            channel_id=request.channel_id,
            is_admin=self._is_admin(request),
        )
        return DeferredError(item.id)

    async def replay_deferred(self, item: DeferredRequest) -> str:
        """Run a deferred request again and return the delivered URLs."""
        result = await self.ingest_url(
            IngestRequest(
                source_url=item.url,
                user_id=item.user_id,
                username=item.username,
                operation_type=OperationType.DOWNLOAD,
                is_admin=item.is_admin,
                channel_id=item.channel_id,
                deferred=True,
            )
        )
        return "\n".join(artifact.url for artifact in result.artifacts)

    async def ingest_upload(self, request: IngestRequest) -> IngestResult:
        """Validate uploaded bytes and deliver them, transformed if requested.

        Raises:
            MediaRelayError: Any failure, after the operation is marked as error
        """
        if request.data is None:
            raise ValidationError("upload data is required")
        self._throttle(request)

        operation_id = await self.tracker.create(
            request.operation_type,
            user_id=request.user_id,
            username=request.username,
            context={
                "attachment": request.filename,
                "content_type": request.content_type,
                "options": request.options.discriminator(),
            },
        )
        await self.tracker.start(operation_id)

        with operation_context(operation_id, user_id=request.user_id):
            try:
                extension = Path(request.filename or "").suffix.lower()
                kind = request.kind_hint or detect_kind(extension, request.content_type)
                validate_attachment(
                    request.content_type,
                    len(request.data),
                    kind,
                    self.limits,
                    is_admin=self._is_admin(request),
                )
                validate_signature(request.data, kind)
                await self.tracker.log_step(
                    operation_id,
                    "validate",
                    "success",
                    metadata={"kind": kind.value, "size": len(request.data)},
                )

                artifact = await self._produce(
                    operation_id,
                    request.data,
                    kind,
                    extension,
                    request.options,
                    inline_channel=request.inline_channel,
                    user_id=request.user_id,
                )
                await self.tracker.finish(operation_id, file_size=artifact.size)
                logger.info(
                    "upload_ingested", kind=artifact.kind.value, reused=artifact.reused
                )
                return IngestResult(operation_id=operation_id, artifacts=[artifact])
            except Exception as e:
                await self.tracker.fail(operation_id, e)
                raise

    async def _download(
        self, url: str, request: IngestRequest
    ) -> DownloadedFile | list[DownloadedFile]:
        max_size = None if self._is_admin(request) else max(
            self.settings.MAX_VIDEO_SIZE, self.settings.MAX_IMAGE_SIZE
        )
        constraints = DownloadConstraints(max_size=max_size)
        if is_direct_file_url(url):
            return await self.file_fetcher.fetch_with_refresh(url, self.refresher, constraints)
        return await self.downloader.fetch(url, constraints)

    def _check_size(self, size: int, kind: ArtifactKind, request: IngestRequest) -> None:
        ceiling = (
            self.limits.max_video_size
            if kind is ArtifactKind.VIDEO
            else self.limits.max_image_size
        )
        if size > ceiling and not self._is_admin(request):
            raise ValidationError(
                f"{kind.value} file is too large (max {ceiling // (1024 * 1024)}mb)"
            )

    async def _serve_cached(
        self,
        operation_id: str,
        url: str,
        entry: LedgerEntry,
        discriminator: str,
    ) -> IngestResult | None:
        """Answer from a ledger entry, or None if it has to be fetched again."""
        file_url = entry.file_url
        if is_attachment_url(file_url) and is_attachment_expired(file_url):
            if self.refresher is None:
                logger.info("cached_attachment_expired", url=file_url)
                return None
            try:
                file_url = await self.refresher.refresh(file_url)
            except StaleResourceError as e:
                logger.warning("cached_attachment_refresh_failed", url=entry.file_url, error=str(e))
                return None
            await self._record_entry(url, entry, file_url, discriminator)

        await self.tracker.log_step(
            operation_id,
            "ledger_hit",
            "success",
            message="URL already processed",
            metadata={"file_url": file_url, "content_hash": entry.content_hash},
        )
        artifact = DeliveredArtifact(
            url=file_url,
            size=entry.file_size or 0,
            method=self._method_for(file_url),
            content_hash=entry.content_hash,
            kind=ArtifactKind(entry.kind),
            extension=entry.extension,
            reused=True,
        )
        await self.tracker.finish(operation_id, file_size=artifact.size)
        return IngestResult(operation_id=operation_id, artifacts=[artifact], cached=True)

    async def _produce(
        self,
        operation_id: str,
        data: bytes,
        kind: ArtifactKind,
        extension: str | None,
        options: TransformOptions,
        inline_channel: Any = None,
        user_id: str | None = None,
    ) -> DeliveredArtifact:
        """Dedupe, transform when needed, and store one artifact.

        The identity is computed from the input bytes and the transform, so a
        repeated request is answered before any transcoding happens.
        """
        discriminator = options.discriminator()
        identity = hash_with_discriminator(data, discriminator)
        input_ext = normalize_extension(extension, kind)
        out_kind = options.target_kind(kind)
        out_ext = input_ext if out_kind is kind else out_kind.default_extension

        await self.tracker.log_step(
            operation_id,
            "hash",
            "success",
            metadata={"content_hash": identity, "discriminator": discriminator},
        )

        existing = await self.store.locate(identity, out_kind, out_ext)
        if existing is not None:
            await self.tracker.log_step(
                operation_id,
                "cache_hit",
                "success",
                message="Artifact already stored",
                metadata=existing.as_dict(),
            )
            return DeliveredArtifact(
                url=existing.url,
                size=existing.size,
                method=existing.method,
                content_hash=identity,
                kind=out_kind,
                extension=out_ext,
                reused=True,
            )

        output = data
        if not options.is_identity:
            temp_files: list[Path] = []
            await self.tracker.log_step(
                operation_id, "transcode", "running", metadata={"options": discriminator}
            )
            output = await transcode_bytes(
                self.transcoder,
                data,
                input_ext,
                out_ext,
                options,
                temp_dir=self.settings.TEMP_DIR,
                on_temp_file=temp_files.append,
            )
            await self.tracker.log_step(
                operation_id,
                "transcode",
                "success",
                file_path=str(temp_files[0]) if temp_files else None,
                metadata={"output_hash": hash_bytes(output), "size": len(output)},
            )

        metadata = {"content-hash": identity, "kind": out_kind.value}
        if user_id:
            metadata["user-id"] = user_id
        result = await self.store.put(
            output,
            identity,
            out_kind,
            metadata=metadata,
            extension=out_ext,
            inline_channel=inline_channel,
        )
        await self.tracker.log_step(
            operation_id,
            "upload",
            "success",
            file_path=str(result.location.path) if isinstance(result.location, Local) else None,
            metadata=result.as_dict(),
        )
        return DeliveredArtifact(
            url=result.url,
            size=result.size,
            method=result.method,
            content_hash=identity,
            kind=out_kind,
            extension=out_ext,
            reused=result.reused,
        )

    async def _record(
        self,
        url: str,
        artifact: DeliveredArtifact,
        user_id: str | None,
        discriminator: str,
    ) -> None:
        if self.ledger is None:
            return
        try:
            await self.ledger.record(
                url,
                artifact.content_hash,
                artifact.kind.value,
                artifact.url,
                extension=artifact.extension,
                user_id=user_id,
                file_size=artifact.size,
                modifiers=discriminator or None,
            )
        except Exception as e:
            # The artifact is delivered; a missing ledger row only costs a refetch
            logger.error("ledger_record_failed", url=url[:80], error=str(e))

    async def _record_entry(
        self, url: str, entry: LedgerEntry, file_url: str, discriminator: str
    ) -> None:
        if self.ledger is None:
            return
        try:
            await self.ledger.record(
                url,
                entry.content_hash,
                entry.kind,
                file_url,
                extension=entry.extension,
                user_id=entry.user_id,
                file_size=entry.file_size,
                modifiers=discriminator or None,
            )
        except Exception as e:
            logger.error("ledger_record_failed", url=url[:80], error=str(e))

    def _method_for(self, file_url: str) -> DeliveryMethod:
        if is_attachment_url(file_url):
            return DeliveryMethod.INLINE
        if file_url.startswith(self.settings.LOCAL_BASE_URL):
            return DeliveryMethod.LOCAL
        return DeliveryMethod.REMOTE
