"""Command line interface: replay recorded provider streams through the engine."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from parley import __version__
from parley.config import EngineConfig, load_config
from parley.core.context import EngineContext
from parley.core.sinks import RecordingRenderSink
from parley.errors import ConfigError
from parley.stream.reader import IterableReader, chunk_text
from parley.stream.stats import estimate_tokens
from parley.types import ImagePart, ProviderFormat, Turn, parts_to_wire

console = Console()


def configure_logging(level: str, verbose: bool = False) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=getattr(logging, level.upper(), logging.WARNING))


def turn_to_dict(turn: Turn) -> dict[str, Any]:
    """JSON view of a finalized turn."""
    return {
        "format": turn.format.value,
        "text": turn.text,
        "thinking": turn.thinking,
        "parts": parts_to_wire(turn.parts),
        "tool_calls": [
            {"id": c.id, "name": c.name, "arguments": c.arguments, "status": c.status.value}
            for c in turn.tool_calls
        ],
        "finish_reason": turn.finish_reason,
        "is_error": turn.is_error,
        "truncated": turn.truncated,
        "thinking_signature": turn.thinking_signature,
        "thought_signature": turn.thought_signature,
        "stats": turn.stats.to_dict() if turn.stats else None,
    }


def _print_turn(turn: Turn) -> None:
    if turn.thinking:
        console.print(Panel(turn.thinking, title="thinking", border_style="dim"))
    for part in turn.parts:
        if isinstance(part, ImagePart):
            console.print(f"[cyan]\\[image{': ' + part.alt if part.alt else ''}] "
                          f"{len(part.uri):,} chars[/cyan]")
        elif part.kind == "text":
            console.print(Markdown(part.value))

    if turn.tool_calls:
        table = Table(title="Tool calls (not executed)")
        table.add_column("id", style="dim")
        table.add_column("name", style="bold")
        table.add_column("arguments")
        for call in turn.tool_calls:
            table.add_row(call.id, call.name, json.dumps(call.arguments, ensure_ascii=False))
        console.print(table)

    stats = turn.stats.to_dict() if turn.stats else {}
    flags = []
    if turn.is_error:
        flags.append("[red]error[/red]")
    if turn.truncated:
        flags.append("[yellow]truncated[/yellow]")
    console.print(
        f"[dim]{turn.format.value} | finish={turn.finish_reason or '-'} | "
        f"ttft={stats.get('ttft', '-')}s total={stats.get('totalTime', '-')}s "
        f"tokens={stats.get('tokens', 0)} tps={stats.get('tps', '-')}[/dim]"
        + (" " + " ".join(flags) if flags else "")
    )


async def replay_stream(
    body: str,
    fmt: ProviderFormat,
    config: EngineConfig,
    *,
    chunk_size: int = 0,
    markup_tools: bool | None = None,
) -> Turn:
    """Feed a recorded response body through a fresh engine context."""
    chunks = chunk_text(body, chunk_size) if chunk_size > 0 else [body]
    ctx = EngineContext(config)
    try:
        return await ctx.stream(
            IterableReader(chunks), fmt, sink=RecordingRenderSink(), markup_tools=markup_tools,
        )
    finally:
        ctx.close()


@click.group()
@click.version_option(__version__, prog_name="parley")
@click.option("--config", "-c", "config_path", default=None,
              help="Path to parley.yaml (auto-detected from CWD or ~/.config/parley/)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """parley - streaming protocol engine for LLM chat APIs."""
    try:
        config = load_config(config_path)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    configure_logging(config.log_level, verbose)
    ctx.obj = config


@main.command()
@click.argument("source", type=click.Path(exists=True, dir_okay=False, allow_dash=True))
@click.option("--format", "-f", "fmt", required=True,
              type=click.Choice([f.value for f in ProviderFormat]),
              help="Wire format of the recorded stream")
@click.option("--chunk-size", default=0, show_default=True,
              help="Split the body into reads of this many characters (0 = one read)")
@click.option("--markup-tools/--native-tools", default=None,
              help="Parse <tool_use> markup from the text channel")
@click.option("--json", "as_json", is_flag=True, help="Print the final turn as JSON")
@click.pass_obj
def replay(config: EngineConfig, source: str, fmt: str, chunk_size: int,
           markup_tools: bool | None, as_json: bool) -> None:
    """Replay a recorded SSE / JSON-lines response from SOURCE."""
    body = sys.stdin.read() if source == "-" else Path(source).read_text(encoding="utf-8")
    turn = asyncio.run(replay_stream(
        body, ProviderFormat.parse(fmt), config,
        chunk_size=chunk_size, markup_tools=markup_tools,
    ))
    if as_json:
        click.echo(json.dumps(turn_to_dict(turn), ensure_ascii=False, indent=2))
    else:
        _print_turn(turn)


@main.command()
@click.argument("text", required=False)
@click.option("--file", "path", type=click.Path(exists=True, dir_okay=False),
              help="Estimate the contents of a file instead")
def estimate(text: str | None, path: str | None) -> None:
    """Print the rough token estimate of TEXT."""
    if path:
        text = Path(path).read_text(encoding="utf-8")
    if text is None:
        raise click.UsageError("Provide TEXT or --file")
    click.echo(str(estimate_tokens(text)))


if __name__ == "__main__":
    main()
