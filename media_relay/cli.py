"""Command line interface for media-relay."""

import asyncio
import json
import sys

import click

from media_relay.content_store.models import ArtifactKind, storage_key
from media_relay.core.config import Settings
from media_relay.core.db import get_session_factory
from media_relay.core.errors import MediaRelayError
from media_relay.core.logging import configure_logging
from media_relay.database.store import RecordStore
from media_relay.storage import LocalDiskStore, S3ObjectStore, build_default_chain


def _settings() -> Settings:
    config = Settings()
    configure_logging(level=config.LOG_LEVEL, json_logs=config.JSON_LOGS)
    return config


def _record_store() -> RecordStore:
    session_factory = get_session_factory()
    if session_factory is None:
        print("Error: no database is configured")
        sys.exit(1)
    return RecordStore(session_factory)


@click.group()
def cli():
    """Media ingest, storage and operation management commands."""
    pass


@cli.command()
@click.option("--host", default="0.0.0.0", help="Host to bind to")
@click.option("--port", default=8000, type=int, help="Port to bind to")
def serve(host, port):
    """Run the HTTP API with the periodic stuck sweep."""
    import uvicorn

    from media_relay.api import create_app
    from media_relay.pipeline import build_runtime

    config = _settings()
    app = create_app(build_runtime(config))
    print(f"Starting media-relay on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port, log_config=None)


@cli.command("init-db")
def init_db():
    """Create the database tables."""
    from media_relay.database.base import create_tables

    _settings()
    session_factory = get_session_factory()
    if session_factory is None:
        print("Error: no database is configured")
        sys.exit(1)

    async def run():
        engine = session_factory.kw["bind"]
        await create_tables(engine)
        await engine.dispose()

    asyncio.run(run())
    print("Database tables created")


@cli.command("sweep-stuck")
@click.option(
    "--max-age-minutes",
    default=None,
    type=int,
    help="Minutes an operation may stay running (default from settings)",
)
@click.option("--dry-run", is_flag=True, help="List stuck operations without failing them")
def sweep_stuck(max_age_minutes, dry_run):
    """Mark operations stuck in running as failed."""
    config = _settings()
    record_store = _record_store()
    threshold = max_age_minutes or config.STUCK_OPERATION_MINUTES

    async def run():
        stuck = await record_store.list_stuck_operations(threshold)
        if not stuck:
            print(f"No operations running for more than {threshold} minutes")
            return
        print(f"Found {len(stuck)} stuck operation(s):")
        for operation in stuck:
            owner = f" user {operation.user_id}" if operation.user_id else ""
            if dry_run:
                print(f"  {operation.operation_id}{owner} (dry run)")
            elif await record_store.mark_operation_failed(operation.operation_id):
                print(f"  {operation.operation_id}{owner} marked as failed")
            else:
                print(f"  {operation.operation_id}{owner} skipped (no longer running)")

    asyncio.run(run())


@cli.command()
@click.argument("operation_id")
def trace(operation_id):
    """Print the step log of an operation."""
    _settings()
    record_store = _record_store()
    entries = asyncio.run(record_store.get_operation_trace(operation_id))
    if not entries:
        print(f"Operation {operation_id} not found")
        return

    print(f"Operation: {operation_id}")
    for entry in entries:
        line = f"  [{entry['timestamp']}] {entry['step']:<14} {entry['status']:<8}"
        if entry.get("message"):
            line += f" {entry['message']}"
        print(line)
        if entry.get("file_path"):
            print(f"      file: {entry['file_path']}")
        if entry.get("metadata"):
            print(f"      metadata: {json.dumps(entry['metadata'], default=str)}")


@cli.command()
@click.argument("content_hash")
@click.option(
    "--kind",
    type=click.Choice([kind.value for kind in ArtifactKind]),
    default=ArtifactKind.VIDEO.value,
    help="Artifact kind",
)
@click.option("--extension", default=None, help="File extension (default per kind)")
def inspect(content_hash, kind, extension):
    """Show where an artifact is stored."""
    from media_relay.content_store import ContentStore

    config = _settings()
    artifact_kind = ArtifactKind(kind)
    try:
        key = storage_key(content_hash, artifact_kind, extension)
    except MediaRelayError as e:
        print(f"Error: {e.message}")
        return

    local_store = LocalDiskStore(config.STORAGE_PATH)
    remote = S3ObjectStore.from_settings(config) if config.remote_store_configured else None
    chain = build_default_chain(
        local_store, config.LOCAL_BASE_URL, config.INLINE_UPLOAD_LIMIT, object_store=remote
    )
    store = ContentStore(chain, local_store, remote=remote)

    print(f"Content Hash: {content_hash}")
    print(f"Key: {key}")
    found = asyncio.run(store.locate(content_hash, artifact_kind, extension))
    if found is None:
        print("Not stored")
        return
    print(f"  Method: {found.method.value}")
    print(f"  URL: {found.url}")
    if found.size:
        print(f"  Size: {found.size} bytes")


@cli.command()
def stats():
    """Show local storage statistics."""
    config = _settings()
    statistics = LocalDiskStore(config.STORAGE_PATH).statistics()

    print("Local Storage Status:")
    print(f"  Root: {statistics['root']}")
    print(f"  Total files: {statistics['total_files']}")
    print(f"  Total size: {statistics['total_bytes'] / 1024 / 1024:.2f} MB")
    for directory, entry in sorted(statistics["by_directory"].items()):
        print(f"  {directory}: {entry['files']} files, {entry['bytes']} bytes")
    print(f"  Remote store configured: {config.remote_store_configured}")


@cli.command()
@click.option("--user-id", default=None, help="Only show requests of this user")
def deferred(user_id):
    """Show downloads waiting for the download service."""
    from media_relay.deferred import DeferredDownloadQueue

    config = _settings()
    if not config.DEFERRED_QUEUE_PATH:
        print("Deferred downloads are disabled")
        return

    queue = DeferredDownloadQueue(config.DEFERRED_QUEUE_PATH)
    asyncio.run(queue.load())
    counts = queue.stats()
    print(f"Deferred downloads: {counts.pop('total')}")
    for status, count in counts.items():
        print(f"  {status}: {count}")
    for item in queue.requests(user_id):
        line = f"  {item.id} {item.status.value:<16} retries={item.retry_count} {item.url}"
        if item.error:
            line += f" ({item.error})"
        print(line)


if __name__ == "__main__":
    cli()
