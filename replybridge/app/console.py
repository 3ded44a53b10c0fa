from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from replybridge.adapters.config.loader import load_settings
from replybridge.adapters.config.schema import Settings
from replybridge.adapters.host.stream import StreamChannelConnector
from replybridge.app.channel_manager import ChannelManager
from replybridge.core.envelopes import (
    ConversationTurn,
    GenerateReplyMessage,
    GetStorageInfoMessage,
    ResponseEnvelope,
    SetCredentialMessage,
)
from replybridge.core.errors import ChannelConnectionError, RequestTimeoutError


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="replybridge-console")
    parser.add_argument("--once", type=str, default=None, help="Ask for one reply and exit. Use '-' to read stdin.")
    parser.add_argument("--set-credential", type=str, default=None, help="Store the API key in the coordinator.")
    parser.add_argument("--storage-info", action="store_true", help="Show coordinator storage usage.")
    parser.add_argument("--config", type=str, default=None, help="Optional config.toml path.")
    return parser


def build_channel_manager(settings: Settings) -> ChannelManager:
    connector = StreamChannelConnector(
        settings.transport.host,
        settings.transport.port,
        limit=settings.transport.max_message_bytes,
    )
    return ChannelManager(connector, settings.channel)


async def run(
    *,
    once: str | None,
    set_credential: str | None,
    storage_info: bool,
    config_path: str | None,
    console: Console | None = None,
    manager: ChannelManager | None = None,
) -> int:
    console = console or Console()
    settings = load_settings(config_path)
    logging.getLogger("replybridge").setLevel(logging.WARNING)
    channel = manager or build_channel_manager(settings)
    try:
        if set_credential is not None:
            response = await channel.send(SetCredentialMessage(credential=set_credential))
            _render_status(console, response, "credential stored")
            if not response.success:
                return 1
        if storage_info:
            response = await channel.send(GetStorageInfoMessage())
            if not response.success:
                _render_status(console, response, "")
                return 1
            console.print(_storage_table(response.payload or {}))
        if once is not None:
            text = sys.stdin.read() if once == "-" else once
            if not text.strip():
                raise ValueError("empty input for --once")
            return await _ask_for_reply(channel, console, [ConversationTurn(role="user", content=text.strip())])
        if set_credential is not None or storage_info:
            return 0
        return await _interactive(channel, console)
    except (ChannelConnectionError, RequestTimeoutError) as exc:
        console.print(f"[red]{exc}[/]")
        return 1
    finally:
        await channel.close()


async def _interactive(channel: ChannelManager, console: Console) -> int:
    console.print("[dim]Paste conversation lines as 'role: text'. Empty line asks for a reply, 'exit' quits.[/]")
    transcript: List[ConversationTurn] = []
    while True:
        try:
            line = await asyncio.to_thread(Prompt.ask, "[bold cyan]>[/]", default="", show_default=False)
        except (KeyboardInterrupt, EOFError):
            return 0
        stripped = line.strip()
        if stripped.lower() in {"quit", "exit"}:
            return 0
        if stripped:
            transcript.append(_parse_turn(stripped))
            continue
        if not transcript:
            continue
        await _ask_for_reply(channel, console, transcript)
        transcript = []


def _parse_turn(line: str) -> ConversationTurn:
    role, separator, content = line.partition(":")
    if not separator or not content.strip():
        return ConversationTurn(role="user", content=line)
    return ConversationTurn(role=role.strip() or "user", content=content.strip())


async def _ask_for_reply(channel: ChannelManager, console: Console, transcript: List[ConversationTurn]) -> int:
    with console.status("generating reply..."):
        response = await channel.send(GenerateReplyMessage(messages=list(transcript), credential=""))
    if not response.success:
        _render_status(console, response, "")
        return 1
    text = (response.payload or {}).get("text", "")
    console.print(Panel(text, title="reply", border_style="cyan", padding=(0, 1)))
    return 0


def _render_status(console: Console, response: ResponseEnvelope, success_text: str) -> None:
    if response.success:
        console.print(f"[green]{success_text}[/]")
    else:
        console.print(f"[red]error:[/] {response.error}")


def _storage_table(payload: dict[str, Any]) -> Table:
    table = Table(title="coordinator storage", show_header=False)
    table.add_row("bytes used", str(payload.get("bytesUsed")))
    table.add_row("quota bytes", str(payload.get("quotaBytes")))
    table.add_row("usage", f"{payload.get('percentage')}%")
    table.add_row("credential stored", "yes" if payload.get("hasCredential") else "no")
    return table


def main(argv: Optional[list[str]] = None) -> None:
    args = build_arg_parser().parse_args(argv)
    try:
        code = asyncio.run(
            run(
                once=args.once,
                set_credential=args.set_credential,
                storage_info=args.storage_info,
                config_path=args.config,
            )
        )
    except KeyboardInterrupt:
        return
    raise SystemExit(code)


if __name__ == "__main__":
    main()
