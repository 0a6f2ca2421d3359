"""Command-line front end: stream chat turns and roadmaps in the terminal."""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from nexus_stream.config import NexusConfig, load_config
from nexus_stream.core import ChatPipeline, RoadmapPipeline, SessionFinalizer, StreamSession
from nexus_stream.errors import NexusStreamError
from nexus_stream.events import EventBus, EventName, FramedEvent
from nexus_stream.llm import AsyncCompletionClient
from nexus_stream.stores import (
    InMemoryAggregateStore,
    InMemoryRecordStore,
    InMemoryTurnStore,
    SQLiteDatabase,
)
from nexus_stream.types import Notification

_logger = logging.getLogger(__name__)

console = Console()

CHAT_SYSTEM_PROMPT = (
    "You are a helpful, knowledgeable study assistant. "
    "Answer clearly and use markdown where it helps."
)

ROADMAP_SYSTEM_PROMPT = (
    "You are an expert curriculum designer. Start your answer with THINKING: "
    "followed by a short explanation of how you structured the roadmap. Then "
    "write each topic as TOPIC: followed by one JSON object with the keys "
    "title, description, estimatedMinutes, learningObjectives, prerequisites "
    "and resources. Write 5-10 topics that build on each other."
)


@dataclass
class _Stores:
    turns: Any
    records: Any
    aggregates: Any
    db: SQLiteDatabase | None = None

    def close(self):
        if self.db is not None:
            self.db.close()


def _open_stores(config: NexusConfig, ephemeral: bool) -> _Stores:
    if ephemeral:
        return _Stores(InMemoryTurnStore(), InMemoryRecordStore(), InMemoryAggregateStore())
    db = SQLiteDatabase(config.store.db_path)
    return _Stores(db.turns, db.records, db.aggregates, db)


def _make_client(config: NexusConfig) -> AsyncCompletionClient:
    return AsyncCompletionClient(config.provider, config.stream)


def _make_bus() -> EventBus:
    bus = EventBus()
    bus.subscribe(_log_notification)
    return bus


def _log_notification(notification: Notification):
    _logger.info(
        "%s %s %s", notification.type.value, notification.session_id, notification.data,
    )


class EventRenderer:
    """Renders framed events to the terminal as they arrive."""

    def __init__(self, con: Console, raw: bool = False):
        self.con = con
        self.raw = raw
        self.topics: list[dict[str, Any]] = []
        self.failed = False
        self._channel: EventName | None = None

    def handle(self, event: FramedEvent):
        if self.raw:
            self.con.out(event.to_sse(), end="", highlight=False)
            if event.name is EventName.TOPIC:
                self.topics.append(event.data)
            self.failed = self.failed or event.name is EventName.ERROR
            return

        name = event.name
        if name is EventName.SESSION:
            self.con.print(f"[dim]session {event.data.get('sessionId', '')}[/dim]")
        elif name in (EventName.THINKING, EventName.CONTENT):
            text = event.data.get("content", "")
            if not text:
                return
            if name is not self._channel:
                self._channel = name
                self.con.print()
            style = "dim italic" if name is EventName.THINKING else None
            self.con.print(text, end="", style=style, highlight=False, markup=False)
        elif name is EventName.TOPIC:
            self._break()
            self.topics.append(event.data)
            self.con.print(
                f"[bold cyan]{event.data.get('sequenceOrder', '?')}.[/bold cyan] "
                f"{event.data.get('title', 'Untitled Topic')}"
            )
        elif name is EventName.DONE:
            self._break()
            details = ", ".join(f"{k}={v}" for k, v in event.data.items())
            self.con.print(f"[green]done[/green] [dim]{details}[/dim]")
        elif name is EventName.ERROR:
            self._break()
            self.failed = True
            self.con.print(
                f"[red]error ({event.data.get('kind', 'internal')}): "
                f"{event.data.get('message', '')}[/red]"
            )

    def _break(self):
        if self._channel is not None:
            self._channel = None
            self.con.print()


def _topic_table(topics: list[dict[str, Any]]) -> Table:
    table = Table(title="Roadmap")
    table.add_column("#", justify="right")
    table.add_column("Topic", style="bold")
    table.add_column("Minutes", justify="right")
    table.add_column("Description", style="dim")
    for topic in topics:
        desc = str(topic.get("description", ""))
        if len(desc) > 60:
            desc = desc[:60] + "..."
        table.add_row(
            str(topic.get("sequenceOrder", "")),
            str(topic.get("title", "Untitled Topic")),
            str(topic.get("estimatedMinutes", 30)),
            desc,
        )
    return table


async def _run_chat(config, stores, renderer, session, message):
    async with _make_client(config) as client:
        finalizer = SessionFinalizer(stores.turns, stores.aggregates, _make_bus())
        pipeline = ChatPipeline(client, finalizer, stores.turns, CHAT_SYSTEM_PROMPT)
        async for event in pipeline.run(session, message):
            renderer.handle(event)


async def _run_roadmap(config, stores, renderer, session, goal):
    async with _make_client(config) as client:
        finalizer = SessionFinalizer(aggregate_store=stores.aggregates, event_bus=_make_bus())
        pipeline = RoadmapPipeline(
            client, finalizer, stores.records, stores.aggregates, ROADMAP_SYSTEM_PROMPT,
        )
        async for event in pipeline.run(session, f"GOAL: {goal}"):
            renderer.handle(event)


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to nexus_stream.yaml (auto-detected from CWD or ~/.config/nexus-stream/)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.option("--raw", is_flag=True, help="Print Server-Sent Events frames instead of rendering")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool, raw: bool):
    """nexus-stream - streaming completions with reasoning and topic extraction."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    try:
        config = load_config(config_path)
    except NexusStreamError as e:
        raise click.ClickException(str(e)) from e
    ctx.obj = {"config": config, "raw": raw}


@main.command()
@click.argument("message")
@click.option("--conversation", "conversation_id", default="", help="Continue an existing conversation")
@click.option("--model", "-m", "model_id", default=None, help="Model id (defaults to config)")
@click.option("--no-thinking", is_flag=True, help="Hide reasoning even if the model supports it")
@click.option("--ephemeral", is_flag=True, help="Keep everything in memory")
@click.pass_obj
def chat(obj: dict, message: str, conversation_id: str, model_id: str | None,
         no_thinking: bool, ephemeral: bool):
    """Send MESSAGE and stream the reply."""
    config: NexusConfig = obj["config"]
    model = config.resolve_model_id(model_id)
    session = StreamSession.chat(
        conversation_id,
        model=model,
        thinking_enabled=config.supports_thinking(model) and not no_thinking,
        max_tokens=config.resolve_max_tokens(model),
    )
    renderer = EventRenderer(console, raw=obj["raw"])
    stores = _open_stores(config, ephemeral)
    try:
        asyncio.run(_run_chat(config, stores, renderer, session, message))
    except NexusStreamError as e:
        raise click.ClickException(str(e)) from e
    finally:
        stores.close()
    if renderer.failed:
        sys.exit(1)


@main.command()
@click.argument("goal")
@click.option("--model", "-m", "model_id", default=None, help="Model id (defaults to config)")
@click.option("--ephemeral", is_flag=True, help="Keep everything in memory")
@click.pass_obj
def roadmap(obj: dict, goal: str, model_id: str | None, ephemeral: bool):
    """Generate a learning roadmap for GOAL, streaming topics as they arrive."""
    config: NexusConfig = obj["config"]
    model = config.resolve_model_id(model_id)
    session = StreamSession.structured(
        model=model,
        max_tokens=config.resolve_max_tokens(model),
        attributes={"goal": goal, "title": goal[:80]},
    )
    renderer = EventRenderer(console, raw=obj["raw"])
    stores = _open_stores(config, ephemeral)
    try:
        asyncio.run(_run_roadmap(config, stores, renderer, session, goal))
    except NexusStreamError as e:
        raise click.ClickException(str(e)) from e
    finally:
        stores.close()
    if renderer.topics and not obj["raw"]:
        console.print(_topic_table(renderer.topics))
    if renderer.failed:
        sys.exit(1)


@main.command()
@click.pass_obj
def models(obj: dict):
    """List the configured model catalog."""
    config: NexusConfig = obj["config"]
    table = Table(title="Models")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Max tokens", justify="right")
    table.add_column("Thinking")
    table.add_column("Category", style="dim")
    for m in config.models:
        marker = " *" if m.id == config.default_model else ""
        table.add_row(
            f"{m.id}{marker}",
            m.name,
            str(m.max_tokens),
            "yes" if m.supports_thinking else "no",
            m.category,
        )
    console.print(table)


@main.command()
@click.argument("conversation_id", required=False)
@click.option("--limit", "-n", default=20, show_default=True, help="Conversations to list")
@click.pass_obj
def history(obj: dict, conversation_id: str | None, limit: int):
    """Print the stored turns of CONVERSATION_ID, or list recent conversations."""
    config: NexusConfig = obj["config"]
    db = SQLiteDatabase(config.store.db_path)
    try:
        if conversation_id is None:
            recent = db.turns.conversations(limit)
        else:
            turns = db.turns.find_history(conversation_id)
    finally:
        db.close()

    if conversation_id is None:
        if not recent:
            console.print("[yellow]No conversations stored yet[/yellow]")
            return
        table = Table(title="Conversations")
        table.add_column("ID", style="bold")
        table.add_column("Turns", justify="right")
        table.add_column("Last activity", style="dim")
        for conv_id, count, last in recent:
            table.add_row(conv_id, str(count), datetime.fromtimestamp(last).strftime("%Y-%m-%d %H:%M"))
        console.print(table)
        return

    if not turns:
        console.print(f"[yellow]No turns for conversation {conversation_id}[/yellow]")
        return
    for turn in turns:
        flag = " [yellow](truncated)[/yellow]" if turn.truncated else ""
        console.print(f"[bold]{turn.role}[/bold]{flag}")
        console.print(turn.content, markup=False, highlight=False)
        console.print()


if __name__ == "__main__":
    main()
