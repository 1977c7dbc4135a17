"""Command line interface."""

from __future__ import annotations

import asyncio
import signal
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Tuple

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskID, TextColumn
from rich.table import Table

from . import __version__
from .branching import build_tree, default_path
from .config import Settings
from .errors import ChatkeepError
from .lib.json import dumps
from .lib.log import configure_logging, get_logger
from .lib.timestamps import format_timestamp
from .models import Message, ProgressEvent
from .providers import build_providers
from .services.attachments import AttachmentPrefetcher, AttachmentResolver
from .storage import AsyncSQLiteStore
from .sync import Scheduler, SyncEngine
from .types import ProviderName

logger = get_logger(__name__)

PROVIDER_CHOICE = click.Choice([name.value for name in ProviderName], case_sensitive=False)


@dataclass
class AppEnv:
    settings: Settings
    console: Console
    verbose: bool = False


def _fail(command: str, message: str) -> None:
    raise SystemExit(f"{command}: {message}")


def _provider_names(values: Tuple[str, ...]) -> Optional[List[ProviderName]]:
    if not values:
        return None
    return [ProviderName.from_string(value) for value in values]


class _ProgressBars:
    """Progress sink rendering one rich progress bar per provider and phase."""

    def __init__(self, progress: Progress) -> None:
        self._progress = progress
        self._tasks: Dict[Tuple[str, str], TaskID] = {}

    def __call__(self, event: ProgressEvent) -> None:
        owner = event.provider.value if event.provider else "attachments"
        key = (owner, event.phase.value)
        task = self._tasks.get(key)
        description = f"{owner} {event.phase.value}"
        if task is None:
            task = self._progress.add_task(description, total=event.total or None)
            self._tasks[key] = task
        self._progress.update(
            task,
            completed=event.current,
            total=event.total or None,
            description=f"{description} (+{event.new_chats_found} new)" if event.new_chats_found else description,
        )


def _progress_bar(console: Console) -> Progress:
    return Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        console=console,
        transient=True,
    )


@asynccontextmanager
async def _open_store(settings: Settings) -> AsyncIterator[AsyncSQLiteStore]:
    store = AsyncSQLiteStore(settings.db_path)
    try:
        yield store
    finally:
        await store.close()


@asynccontextmanager
async def _open_engine(
    settings: Settings,
    names: Optional[List[ProviderName]],
    progress: Optional[_ProgressBars] = None,
) -> AsyncIterator[SyncEngine]:
    async with _open_store(settings) as store:
        engine = SyncEngine(build_providers(settings, names), store, settings, progress)
        try:
            yield engine
        finally:
            await engine.aclose()


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, prog_name="chatkeep")
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path), help="JSON config file")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], verbose: bool, json_logs: bool) -> None:
    """Archive ChatGPT, Claude and Perplexity conversations locally."""
    configure_logging(verbose=verbose, json_logs=json_logs)
    try:
        settings = Settings.load(config_path)
    except ChatkeepError as exc:
        _fail("config", str(exc))
    ctx.obj = AppEnv(settings=settings, console=Console(), verbose=verbose)


@cli.command("sync")
@click.argument("providers", nargs=-1, type=PROVIDER_CHOICE)
@click.option("--retry-failed", is_flag=True, help="Only re-attempt conversations that previously failed")
@click.pass_obj
def sync_command(env: AppEnv, providers: Tuple[str, ...], retry_failed: bool) -> None:
    """Sync conversations from the given (default: all connected) providers."""
    names = _provider_names(providers)

    async def _run() -> Dict[ProviderName, object]:
        with _progress_bar(env.console) as bar:
            async with _open_engine(env.settings, names, _ProgressBars(bar)) as engine:
                if not engine.connected():
                    _fail("sync", "no provider has credentials configured")
                return await engine.sync_all(names, retry_failed=retry_failed)

    try:
        results = asyncio.run(_run())
    except ChatkeepError as exc:
        _fail("sync", str(exc))

    table = Table(title="Sync")
    table.add_column("Provider")
    table.add_column("Result")
    table.add_column("New", justify="right")
    table.add_column("Failed", justify="right")
    exit_code = 0
    for name, result in results.items():
        if result.skipped:
            outcome = "[yellow]skipped[/yellow]"
        elif result.success:
            outcome = "[green]ok[/green]"
        else:
            exit_code = 1
            outcome = "[red]logged out[/red]" if result.auth_failed else f"[red]{result.error or 'failed'}[/red]"
        table.add_row(name.value, outcome, str(result.new_chats_found), str(result.failed))
    env.console.print(table)
    if exit_code:
        raise SystemExit(exit_code)


@cli.command("failed")
@click.argument("provider", required=False, type=PROVIDER_CHOICE)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def failed_command(env: AppEnv, provider: Optional[str], json_output: bool) -> None:
    """List conversations whose last sync failed."""
    name = ProviderName.from_string(provider) if provider else None

    async def _run():
        async with _open_store(env.settings) as store:
            return [c for c in await store.list_conversations(name) if c.sync_error]

    failed = asyncio.run(_run())
    if json_output:
        click.echo(dumps([c.model_dump(mode="json") for c in failed]))
        return
    if not failed:
        env.console.print("No failed conversations.")
        return
    table = Table(title="Failed conversations")
    for column in ("Provider", "Id", "Title", "Retries", "Error"):
        table.add_column(column)
    for conversation in failed:
        retries = str(conversation.sync_retry_count)
        if conversation.sync_retry_count >= env.settings.failed_retry_limit:
            retries += " (gave up)"
        table.add_row(
            conversation.provider.value,
            conversation.id,
            conversation.title or "Untitled",
            retries,
            conversation.sync_error or "",
        )
    env.console.print(table)


@cli.command("status")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def status_command(env: AppEnv, json_output: bool) -> None:
    """Show provider state and sync checkpoints."""

    async def _run():
        rows = []
        async with _open_store(env.settings) as store:
            for name in ProviderName:
                state = await store.get_provider_state(name)
                metadata = await store.get_sync_metadata(name)
                conversations = await store.list_conversations(name)
                rows.append((name, state, metadata, conversations))
        return rows

    rows = asyncio.run(_run())
    if json_output:
        click.echo(
            dumps(
                {
                    name.value: {
                        "state": state.model_dump(mode="json"),
                        "sync": metadata.model_dump(mode="json"),
                        "conversations": len(conversations),
                        "failed": sum(1 for c in conversations if c.sync_error),
                    }
                    for name, state, metadata, conversations in rows
                }
            )
        )
        return
    table = Table(title="Providers")
    for column in ("Provider", "Status", "Last sync", "Full sync", "Conversations", "Failed"):
        table.add_column(column)
    for name, state, metadata, conversations in rows:
        full_sync = "complete" if metadata.is_full_sync_complete else f"at offset {metadata.last_completed_offset}"
        table.add_row(
            name.value,
            state.status.value,
            format_timestamp(state.last_sync_at) or "never",
            full_sync,
            str(len(conversations)),
            str(sum(1 for c in conversations if c.sync_error)),
        )
    env.console.print(table)


def _print_branches(console: Console, messages: List[Message]) -> None:
    tree = build_tree(messages)

    def _walk(node_id: str, depth: int) -> None:
        message = tree.index[node_id]
        marker = f" [{message.sibling_index + 1}/{len(message.sibling_ids)}]" if len(message.sibling_ids) > 1 else ""
        console.print(f"{'  ' * depth}[bold]{message.role}[/bold]{marker}: {message.text}")
        for child in tree.children_of(node_id):
            _walk(child, depth + 1)

    for root in tree.sorted_roots():
        _walk(root, 0)


@cli.command("show")
@click.argument("conversation_id")
@click.option("--all-branches", is_flag=True, help="Print every branch instead of the current one")
@click.option("--refresh", is_flag=True, help="Re-fetch the conversation from its provider first")
@click.pass_obj
def show_command(env: AppEnv, conversation_id: str, all_branches: bool, refresh: bool) -> None:
    """Print a stored conversation."""

    async def _run():
        if refresh:
            async with _open_engine(env.settings, None) as engine:
                loaded = await engine.refresh_conversation(conversation_id)
                for name in engine.providers:
                    await engine.orchestrator(name).wait_background()
            if loaded is None:
                return None
        async with _open_store(env.settings) as store:
            conversation = await store.get_conversation(conversation_id)
            if conversation is None:
                return None
            return conversation, await store.get_messages(conversation_id)

    try:
        loaded = asyncio.run(_run())
    except ChatkeepError as exc:
        _fail("show", str(exc))
    if loaded is None:
        _fail("show", f"conversation {conversation_id} not found")
    conversation, messages = loaded
    env.console.print(f"[bold]{conversation.title or 'Untitled'}[/bold] ({conversation.provider.value})")
    if conversation.sync_error:
        env.console.print(f"[red]last sync failed:[/red] {conversation.sync_error}")
    if all_branches:
        _print_branches(env.console, messages)
        return
    for message in default_path(build_tree(messages), conversation.current_node_id):
        env.console.print(f"[bold]{message.role}[/bold]: {message.text}")


@cli.command("fetch-attachments")
@click.argument("providers", nargs=-1, type=PROVIDER_CHOICE)
@click.pass_obj
def fetch_attachments_command(env: AppEnv, providers: Tuple[str, ...]) -> None:
    """Download every attachment not yet in the local cache."""
    names = _provider_names(providers)

    async def _run():
        totals = {"downloaded": 0, "cached": 0, "failed": 0}
        with _progress_bar(env.console) as bar:
            async with _open_engine(env.settings, names) as engine:
                for name, provider in engine.providers.items():
                    prefetcher = AttachmentPrefetcher(
                        AttachmentResolver(env.settings.attachments_dir, provider.download_file),
                        engine.store,
                        progress=_ProgressBars(bar),
                    )
                    result = await prefetcher.run(await engine.store.list_conversations(name))
                    totals["downloaded"] += result.downloaded
                    totals["cached"] += result.cached
                    totals["failed"] += result.failed
        return totals

    try:
        totals = asyncio.run(_run())
    except ChatkeepError as exc:
        _fail("fetch-attachments", str(exc))
    env.console.print(
        f"Attachments: {totals['downloaded']} downloaded, {totals['cached']} cached, {totals['failed']} failed"
    )


@cli.command("watch")
@click.argument("providers", nargs=-1, type=PROVIDER_CHOICE)
@click.option("--interval", type=float, help="Seconds between polls")
@click.pass_obj
def watch_command(env: AppEnv, providers: Tuple[str, ...], interval: Optional[float]) -> None:
    """Poll providers until interrupted."""
    names = _provider_names(providers)

    async def _run() -> None:
        async with _open_engine(env.settings, names) as engine:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, engine.cancel, "interrupted")
            await Scheduler(engine, interval).run(names)

    try:
        asyncio.run(_run())
    except ChatkeepError as exc:
        _fail("watch", str(exc))


def main() -> None:
    cli()


__all__ = ["cli", "main"]
