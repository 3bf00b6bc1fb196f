"""CLI entry point for chat-recall.

Retrieval, indexing status and the operator tasks (import, rename,
reindex) from the command line.
"""

import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import click

from chat_recall.config import load_config
from chat_recall.errors import FatalConfigurationError
from chat_recall.indexing.__main__ import main as indexer_main
from chat_recall.indexing.daemon import connect_vector_store
from chat_recall.indexing.orchestrator import (
    ALL_CONVERSATIONS,
    build_handlers,
    build_orchestrator,
    indexing_status,
    invalidate_conversation,
)
from chat_recall.indexing.state import IndexerState
from chat_recall.logging import get_logger, setup_logging
from chat_recall.models import ConfidenceLevel, FusedHit, Message
from chat_recall.retrieval.service import RetrieveOptions, build_recall_service
from chat_recall.store.messages import MessageStore
from chat_recall.store.vectors import TypesenseVectorStore

logger = get_logger("cli")

LEVEL_COLORS = {
    ConfidenceLevel.HIGH: "\033[32m",
    ConfidenceLevel.MEDIUM: "\033[33m",
    ConfidenceLevel.LOW: "\033[35m",
    ConfidenceLevel.NONE: "\033[31m",
}


def parse_timestamp(value: str | int | float) -> datetime:
    """Accept epoch seconds or an ISO-8601 string; naive values are UTC."""
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def load_jsonl_messages(path: Path, conversation_id: str) -> tuple[list[Message], int]:
    """Read messages from a JSONL export.

    Each line needs ``message_id``, ``author_id``, ``text`` and ``timestamp``;
    ``author_name`` defaults to the author id.

    Returns:
        (messages, number of lines skipped)
    """
    messages = []
    skipped = 0
    with open(path, encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
                messages.append(Message(
                    conversation_id=conversation_id,
                    message_id=int(data["message_id"]),
                    author_id=str(data["author_id"]),
                    author_name=str(data.get("author_name") or data["author_id"]),
                    text=data.get("text") or "",
                    timestamp_utc=parse_timestamp(data["timestamp"]),
                ))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed line: path=%s line=%d error=%s", path, line_no, e)
                skipped += 1
    return messages, skipped


def print_hit(number: int, hit: FusedHit, verbose: bool = False) -> None:
    """Print a fused hit."""
    rerank = f" rerank={hit.rerank_score:.2f}" if hit.rerank_score is not None else ""
    click.echo(
        f"\033[36m[{number}]\033[0m \033[1m{hit.origin_index}:{hit.source_key}\033[0m "
        f"fused={hit.fused_score:.4f} sim={hit.raw_score:.3f}{rerank}"
    )
    if verbose:
        sources = ", ".join(f"q{q}/{index}" for q, index in hit.contributing_queries)
        click.echo(f"Sources: {sources}")
    click.echo(f"\n{hit.context_text if verbose and hit.context_text else hit.display_text}\n")
    click.echo("-" * 40)


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Search and index group conversation history."""
    # The daemon sets up its own logging with console output
    if ctx.invoked_subcommand != "daemon":
        setup_logging("cli", console=False)


@cli.command()
@click.argument("conversation")
@click.argument("question")
@click.option("--variants", "-q", type=int, default=None, help="Number of query variants")
@click.option("--limit", "-n", type=int, default=None, help="Results per variant and index")
@click.option("--no-rerank", is_flag=True, help="Skip the relevance judge")
@click.option("--verbose", "-v", is_flag=True, help="Show sources and window context")
def ask(conversation: str, question: str, variants: int | None, limit: int | None, no_rerank: bool, verbose: bool) -> None:
    """Retrieve context for a question."""
    try:
        config = load_config()
        service = build_recall_service(config)
    except FatalConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(2)

    options = RetrieveOptions.from_config(config.retrieval)
    if variants is not None:
        options.variant_count = variants
    if limit is not None:
        options.per_list_limit = limit
    if no_rerank:
        options.rerank = False

    result = asyncio.run(service.retrieve(conversation, question, options))

    level = result.confidence.level
    click.echo(f"Confidence: {LEVEL_COLORS[level]}{level.name}\033[0m ({result.confidence.reason})")
    if verbose:
        for i, variant in enumerate(result.variants):
            click.echo(f"Variant {i}: {variant}")
    click.echo("")

    if result.insufficient_grounding:
        click.echo("Insufficient grounding: no relevant history found.")
        return

    for number, hit in enumerate(result.hits, start=1):
        print_hit(number, hit, verbose)


@cli.command()
def status() -> None:
    """Show per-indexer totals."""
    try:
        config = load_config()
        with MessageStore(config.storage.messages_db) as source, IndexerState(config.storage.state_db) as state:
            handlers = build_handlers(config, source, TypesenseVectorStore(config.typesense))
            stats = indexing_status(handlers, source, state)
    except FatalConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(2)
    except Exception as e:
        click.echo(f"Error reading indexing status: {e}", err=True)
        sys.exit(1)

    for name, s in stats.items():
        click.echo(f"{name:<10} total={s.total} indexed={s.indexed} pending={s.pending}")


@cli.command()
@click.argument("conversation")
@click.option("--yes", is_flag=True, help="Confirm dropping and rebuilding the index")
def reindex(conversation: str, yes: bool) -> None:
    """Drop and rebuild the indexes for CONVERSATION, or '*' for all."""
    if not yes:
        click.echo("Reindex deletes index records; re-run with --yes to confirm.", err=True)
        sys.exit(1)

    try:
        config = load_config()
        with MessageStore(config.storage.messages_db) as source, IndexerState(config.storage.state_db) as state:
            orchestrator = build_orchestrator(config, source, state, vector_store=connect_vector_store(config))
            results = asyncio.run(orchestrator.reindex_all(conversation, confirm=True))
    except FatalConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(2)

    target = "all conversations" if conversation == ALL_CONVERSATIONS else conversation
    click.echo(f"Reindexed {target}:")
    for name, r in results.items():
        suffix = " (backed off, run the daemon to finish)" if r.backed_off else ""
        click.echo(f"  {name}: stored={r.processed} failed={r.failed}{suffix}")


@cli.command(name="import")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("conversation")
def import_messages(file: Path, conversation: str) -> None:
    """Load a JSONL message export into the message store."""
    config = load_config()
    messages, skipped = load_jsonl_messages(file, conversation)
    with MessageStore(config.storage.messages_db) as store:
        written = store.add_messages(messages)
    click.echo(f"Imported {written} messages into {conversation} (skipped {skipped})")


@cli.command()
@click.argument("conversation")
@click.argument("author_id")
@click.argument("name")
def rename(conversation: str, author_id: str, name: str) -> None:
    """Correct an author's display name and schedule re-indexing."""
    config = load_config()
    with MessageStore(config.storage.messages_db) as store, IndexerState(config.storage.state_db) as state:
        updated = store.rename_author(conversation, author_id, name)
        if updated:
            try:
                vector_store = TypesenseVectorStore(config.typesense)
                handlers = build_handlers(config, store, vector_store)
                asyncio.run(invalidate_conversation(handlers, vector_store, state, conversation))
            except FatalConfigurationError as e:
                click.echo(f"Configuration error: {e}", err=True)
                sys.exit(2)
            except Exception as e:
                click.echo(f"Renamed {author_id} but could not schedule re-indexing: {e}", err=True)
                sys.exit(1)
    click.echo(f"Renamed {author_id} to {name!r} in {updated} messages")
    if updated:
        click.echo("Index records will be rebuilt on the next indexing pass.")


@cli.command()
def daemon() -> None:
    """Run the indexing loop in the foreground."""
    indexer_main()


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
