"""
CLI entrypoint for the MT5 position streaming service.

Provides commands for running the stream, the REST fallback sweep, and
operator inspection of the persisted status and audit log.
"""
import asyncio
import json
import signal
from pathlib import Path
from typing import Optional

import typer

from signalstream.config.config import Config, load_config
from signalstream.config.dotenv_loader import load_dotenv_files
from signalstream.domain.models import StreamingLogType
from signalstream.exceptions import ConfigurationError
from signalstream.monitoring.logger import bind_log_context, get_logger, setup_logging
from signalstream.storage.db import Database, get_db, init_db

app = typer.Typer(
    name="signalstream",
    help="MT5 position streaming and signal reconciliation",
    add_completion=False,
)

logger = get_logger(__name__)

ConfigOption = typer.Option(None, "--config", help="Path to config file (default: bundled config.yaml)")


def _bootstrap(config_path: Optional[Path], log_file: Optional[Path] = None) -> Config:
    load_dotenv_files()
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(2)
    setup_logging(
        config.monitoring.log_level,
        config.monitoring.log_format,
        str(log_file) if log_file else config.monitoring.log_file,
    )
    return config


def _database(config: Config) -> Database:
    try:
        if config.storage.database_url:
            return init_db(config.storage.database_url)
        return get_db()
    except ConfigurationError as e:
        typer.secho(f"Database not configured: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(2)


@app.command()
def run(
    config_path: Optional[Path] = ConfigOption,
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Path to log file"),
):
    """
    Start the position stream and keep it alive until SIGINT/SIGTERM.

    Example:
        signalstream run --config config.yaml
    """
    config = _bootstrap(config_path, log_file)
    db = _database(config)

    from signalstream.streaming.session import create_session

    async def run_stream():
        try:
            session = create_session(config, db)
        except ConfigurationError as e:
            logger.critical("STREAMING_NOT_CONFIGURED", error=str(e))
            raise
        bind_log_context(account_id=session.account_id, environment=config.environment)

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        try:
            try:
                await session.start()
            except ConfigurationError:
                raise
            except Exception as e:
                # A reconnect is already scheduled; keep the keeper running
                logger.error("Initial streaming start failed", error=str(e), error_type=type(e).__name__)

            session.start_keeper()
            await stop_event.wait()
            logger.info("Shutdown signal received")
        finally:
            await session.stop()
            close = getattr(session.gateway, "close", None)
            if close is not None:
                close()

    try:
        asyncio.run(run_stream())
    except ConfigurationError as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(2)
    except KeyboardInterrupt:
        logger.info("Streaming stopped by user")
    finally:
        db.dispose()


@app.command()
def status(config_path: Optional[Path] = ConfigOption):
    """Display the persisted streaming status record."""
    config = _bootstrap(config_path)
    db = _database(config)

    from signalstream.storage.status import StreamingStatusStore

    record = asyncio.run(StreamingStatusStore(db).get())
    typer.echo("Streaming Status")
    typer.echo("=" * 50)
    typer.echo(f"Environment:  {config.environment}")
    if record is None:
        typer.echo("\n⚪️ Not running (no status record)")
        return

    if record.is_connected:
        typer.secho(f"\n🟢 Connected ({record.state})", fg=typer.colors.GREEN, bold=True)
    else:
        typer.secho(f"\n🔴 Disconnected ({record.state})", fg=typer.colors.RED, bold=True)
    typer.echo(f"  Account:      {record.account_id}")
    typer.echo(f"  Last event:   {record.last_event.isoformat() if record.last_event else '-'}")
    typer.echo(f"  Updated:      {record.updated_at.isoformat() if record.updated_at else '-'}")
    typer.echo(f"  Reconnects:   {record.total_reconnects}")
    typer.echo(f"  Health score: {record.health_score if record.health_score is not None else '-'}")
    if record.error:
        typer.secho(f"  Last error:   {record.error}", fg=typer.colors.YELLOW)


@app.command()
def logs(
    config_path: Optional[Path] = ConfigOption,
    limit: int = typer.Option(50, "--limit", min=1, max=1000, help="Number of entries"),
    log_type: Optional[StreamingLogType] = typer.Option(None, "--type", help="Only this entry type"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
):
    """Show recent audit log entries, newest first."""
    config = _bootstrap(config_path)
    db = _database(config)

    from signalstream.storage.streaming_log import StreamingLogSink

    entries = asyncio.run(StreamingLogSink(db).get_recent(limit, log_type.value if log_type else None))
    if as_json:
        typer.echo(json.dumps(entries, indent=2, default=str))
        return
    if not entries:
        typer.echo("No log entries.")
        return
    for entry in entries:
        color = typer.colors.GREEN if entry["success"] else typer.colors.RED
        position = f" #{entry['position_id']}" if entry["position_id"] else ""
        typer.secho(f"{entry['timestamp']} | {entry['type']:<22}{position} | {entry['message']}", fg=color)
        if entry["error"]:
            typer.echo(f"    error: {entry['error']}")


@app.command("clear-logs")
def clear_logs(
    config_path: Optional[Path] = ConfigOption,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete every audit log entry."""
    config = _bootstrap(config_path)
    db = _database(config)
    if not yes and not typer.confirm("Delete all streaming log entries?"):
        raise typer.Abort()

    from signalstream.storage.streaming_log import StreamingLogSink

    deleted = asyncio.run(StreamingLogSink(db).clear_all())
    typer.echo(f"Deleted {deleted} log entries.")


@app.command("sweep-locks")
def sweep_locks(
    config_path: Optional[Path] = ConfigOption,
    max_age: Optional[int] = typer.Option(None, "--max-age", help="Override lock age in seconds"),
):
    """Purge abandoned archive locks and stuck signal locks."""
    config = _bootstrap(config_path)
    db = _database(config)

    from signalstream.storage.archive_lock import ArchiveLockStore
    from signalstream.storage.signal_mapping import SignalMappingStore

    archive_age = max_age or config.storage.archive_lock_max_age_seconds
    signal_age = max_age or config.storage.signal_lock_max_age_seconds

    async def sweep():
        archive = await ArchiveLockStore(db).sweep_stale(archive_age)
        signal_locks = await SignalMappingStore(db).sweep_stale(signal_age)
        return archive, signal_locks

    archive, signal_locks = asyncio.run(sweep())
    typer.echo(f"Removed {archive} archive locks and {signal_locks} signal locks.")


@app.command("check-config")
def check_config(config_path: Optional[Path] = ConfigOption):
    """Validate configuration and report which capabilities are enabled."""
    config = _bootstrap(config_path)
    ok = True

    typer.echo("Configuration")
    typer.echo("=" * 50)
    typer.echo(f"Environment:   {config.environment}")
    try:
        account_id, _ = config.require_broker_credentials()
        typer.secho(f"✅ Broker account {account_id}", fg=typer.colors.GREEN)
    except ConfigurationError as e:
        ok = False
        typer.secho(f"❌ {e}", fg=typer.colors.RED)

    typer.echo(f"Region URL:    {config.broker.region_url or '(discovered at start)'}")
    typer.echo(f"Database:      {'configured' if config.storage.database_url else 'DATABASE_URL missing'}")
    if not config.storage.database_url:
        ok = False

    features = config.features
    typer.echo(f"Signals:       {'on' if features.signals_enabled else 'off'}")
    if features.telegram_enabled and not config.telegram.is_configured:
        typer.secho("⚠️  Telegram enabled but bot_token/channel_id missing (disabled at runtime)", fg=typer.colors.YELLOW)
    else:
        typer.echo(f"Telegram:      {'on' if features.telegram_enabled else 'off'}")
    typer.echo(f"Archive:       {'on' if features.archive_enabled else 'off'}")

    if not ok:
        raise typer.Exit(1)


@app.command()
def sync(config_path: Optional[Path] = ConfigOption):
    """
    One REST reconciliation pass: create signals for untracked open positions
    and close mappings whose position is gone.
    """
    config = _bootstrap(config_path)
    db = _database(config)

    from signalstream.streaming.fallback import create_fallback

    async def run_sync():
        reconciler = await create_fallback(config, db)
        return await reconciler.run()

    try:
        summary = asyncio.run(run_sync())
    except ConfigurationError as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(2)
    finally:
        db.dispose()

    opened, closed = summary["open"], summary["closed"]
    typer.echo(
        f"Open positions: {opened['open']} | created {opened['created']} | "
        f"existing {opened['existing']} | rejected {opened['rejected']} | failed {opened['failed']}"
    )
    typer.echo(f"Tracked: {closed['tracked']} | closed {closed['closed']} | failed {closed['failed']}")


def main():
    app()


if __name__ == "__main__":
    main()
