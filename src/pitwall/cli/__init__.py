"""
Pitwall CLI - run F1 queries and maintenance from the command line.

Usage:
    pitwall --help
    pitwall query "Compare Hamilton and Verstappen in 2021"
    pitwall query "Who wins the 2024 title?" --thread-id f1_123 --memory-only
    pitwall history f1_123
    pitwall cleanup
"""

import asyncio
import json
import sys
from typing import Optional

import click

from ..app import Pitwall
from ..config import PitwallConfig
from ..exceptions import ConfigurationError
from ..utils.logging import setup_logging


def _load_config(memory_only: bool) -> PitwallConfig:
    config = PitwallConfig.from_env()
    if memory_only:
        config.checkpoint.backend = "memory"
        config.checkpoint.auto_cleanup = False
        config.memory.db_path = ":memory:"
    return config


@click.group()
@click.version_option(package_name="pitwall")
@click.option("--log-level", default="WARNING", show_default=True, help="Logging level")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
def main(log_level: str, json_logs: bool):
    """Pitwall - F1 query orchestration engine.

    Routes Formula 1 questions to specialized analysis handlers, merges their
    answers and keeps per-thread checkpoints and conversation history.
    """
    setup_logging(log_level, json_format=json_logs)


@main.command()
@click.argument("text")
@click.option("--thread-id", default=None, help="Continue an existing conversation thread")
@click.option("--context", "context_json", default=None, help="User context as a JSON object")
@click.option("--memory-only", is_flag=True, help="Keep checkpoints and history in memory only")
def query(text: str, thread_id: Optional[str], context_json: Optional[str], memory_only: bool):
    """Answer one query and print the JSON result.

    \b
    Examples:
        pitwall query "How did Leclerc perform at Monaco?"
        pitwall query "Season recap" --context '{"favorite_teams": ["Ferrari"]}'
    """
    user_context = None
    if context_json:
        try:
            user_context = json.loads(context_json)
        except json.JSONDecodeError as e:
            click.echo(f"Error: --context is not valid JSON: {e}", err=True)
            sys.exit(2)
    try:
        config = _load_config(memory_only)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)

    async def run():
        async with Pitwall(config) as app:
            return await app.process_query(text, thread_id=thread_id, user_context=user_context)

    result = asyncio.run(run())
    click.echo(json.dumps(result, indent=2, default=str))
    if not result["success"]:
        sys.exit(1)


@main.command()
@click.argument("thread_id")
@click.option("--limit", default=50, show_default=True, help="Maximum messages to show")
def history(thread_id: str, limit: int):
    """Print the conversation history of a thread."""

    async def run():
        async with Pitwall(_load_config(False)) as app:
            messages = await app.get_history(thread_id, limit=limit)
            summary = await app.memory.get_summary(thread_id) if app.memory else None
            return [m.to_dict() for m in messages], summary

    messages, summary = asyncio.run(run())
    if not messages:
        click.echo(f"No messages for thread '{thread_id}'.")
        return
    for message in messages:
        click.echo(f"[{message['role']}] {message['content']}")
    if summary:
        click.echo(f"\n{summary['message_count']} messages, average confidence {summary['average_confidence'] or 0:.2f}")


@main.command()
def cleanup():
    """Delete expired checkpoints and conversations."""

    async def run():
        async with Pitwall(_load_config(False)) as app:
            return await app.cleanup()

    counts = asyncio.run(run())
    click.echo(f"Deleted {counts['checkpoints']} checkpoints and {counts['conversations']} conversations.")


if __name__ == "__main__":
    main()
