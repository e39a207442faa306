#!/usr/bin/env python3
"""
ollama-stream — talk to a local Ollama server from the terminal.

Usage:
    ollama-stream generate "Why is the sky blue?"     # stream a completion
    ollama-stream -m llama3.2 chat                    # interactive chat
    ollama-stream chat "hello"                        # one-shot chat
    echo "summarise this" | ollama-stream chat        # pipe stdin
    ollama-stream list                                # local models
    ollama-stream pull llama3.2                       # pull with progress
"""

import argparse
import dataclasses
import json
import sys
import textwrap
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.syntax import Syntax

from config import ClientConfig, load_config, normalize_base_url, read_config_file, save_config
from errors import OllamaError
from logger import default_log_file, get_logger, setup_logging
from ollama_client import OllamaClient
from stream_decoder import DecodePolicy

log = get_logger("main")

console = Console()


# ── Output helpers ─────────────────────────────────────────────────────────────

def print_json(value: Any) -> None:
    console.print(Syntax(json.dumps(value, indent=2), "json", theme="monokai", word_wrap=True))


class TokenPrinter:
    """Stream sink that prints tokens as they arrive and keeps the full text."""

    def __init__(self, raw: bool = False):
        self.raw = raw
        self.text = ""
        self.events = 0

    def __call__(self, value: Any, raw: str) -> None:
        self.events += 1
        if self.raw:
            console.print(raw, markup=False, highlight=False)
            return
        if not isinstance(value, dict):
            return
        if "error" in value:
            console.print(f"\n[red]Error:[/red] {escape(str(value['error']))}")
            return
        token = value.get("response") or value.get("message", {}).get("content", "")
        if token:
            self.text += token
            console.print(token, end="", markup=False, highlight=False)
        elif "status" in value:
            console.print(self._progress(value), markup=False, highlight=False)

    @staticmethod
    def _progress(value: dict) -> str:
        status = value["status"]
        total, completed = value.get("total"), value.get("completed")
        if total and completed is not None:
            return f"{status} {completed * 100 // total}%"
        return status


# ── Commands ───────────────────────────────────────────────────────────────────

def cmd_generate(client: OllamaClient, args) -> None:
    client.prompt(args.prompt)
    if args.no_stream:
        client.append_options({"stream": False}).callback(None)
        result = client.generate()
        if args.raw:
            print_json(result)
        else:
            console.print(result.get("response", "") if isinstance(result, dict) else result, markup=False)
        return
    printer = TokenPrinter(raw=args.raw)
    client.callback(printer).generate()
    console.print()


def _chat_turn(client: OllamaClient, messages: list[dict], raw: bool) -> str:
    printer = TokenPrinter(raw=raw)
    client.callback(printer).chat(messages)
    console.print()
    return printer.text


def chat_repl(client: OllamaClient, model: str | None, raw: bool = False) -> None:
    """Interactive chat loop keeping the conversation history."""
    messages: list[dict] = []
    console.print(f"[bold magenta]ollama-stream[/bold magenta] chatting with [cyan]{model}[/cyan]  "
                  f"[dim](/clear resets history, /exit quits)[/dim]")
    while True:
        try:
            user_input = input("\nYou: ").strip()
        except (KeyboardInterrupt, EOFError):
            console.print("\n[dim]Goodbye.[/dim]")
            break
        if not user_input:
            continue
        if user_input == "/exit":
            console.print("[dim]Goodbye.[/dim]")
            break
        if user_input == "/clear":
            messages.clear()
            console.print("[dim]Conversation cleared.[/dim]")
            continue

        messages.append({"role": "user", "content": user_input})
        console.print("[bold blue]Assistant[/bold blue] ", end="")
        try:
            reply = _chat_turn(client, messages, raw)
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted.[/yellow]")
            messages.pop()
            continue
        messages.append({"role": "assistant", "content": reply})


def cmd_chat(client: OllamaClient, args) -> None:
    piped = not sys.stdin.isatty()
    if args.message or piped:
        query = args.message or ""
        if piped:
            stdin_text = sys.stdin.read().strip()
            if stdin_text:
                query = f"{query}\n\n{stdin_text}" if query else stdin_text
        if not query:
            console.print("[dim]Nothing to send.[/dim]")
            return
        _chat_turn(client, [{"role": "user", "content": query}], args.raw)
        return
    chat_repl(client, args.model, raw=args.raw)


def cmd_show(client: OllamaClient, args) -> None:
    print_json(client.show(args.name, verbose=args.verbose))


def cmd_copy(client: OllamaClient, args) -> None:
    client.copy(args.destination, args.source)
    console.print(f"Copied [cyan]{args.source or args.model}[/cyan] to [cyan]{args.destination}[/cyan]")


def cmd_delete(client: OllamaClient, args) -> None:
    client.delete(args.name)
    console.print(f"Deleted [cyan]{args.name or args.model}[/cyan]")


def cmd_pull(client: OllamaClient, args) -> None:
    client.callback(TokenPrinter(raw=args.raw)).pull(args.name, insecure=args.insecure)


def cmd_embeddings(client: OllamaClient, args) -> None:
    result = client.append_options({"prompt": args.prompt}).embeddings()
    if args.raw:
        print_json(result)
        return
    vector = result.get("embedding", []) if isinstance(result, dict) else []
    preview = ", ".join(f"{x:.4f}" for x in vector[:8])
    console.print(f"[bold]{len(vector)}[/bold] dims: [{preview}{', ...' if len(vector) > 8 else ''}]")


def _print_models(result: Any, current: str | None, raw: bool) -> None:
    if raw:
        print_json(result)
        return
    models = result.get("models", []) if isinstance(result, dict) else []
    if not models:
        console.print("[dim]No models.[/dim]")
    for m in models:
        name = m.get("name", "?")
        marker = "[green]●[/green]" if name == current else " "
        console.print(f"  {marker} {name}")


def cmd_list(client: OllamaClient, args) -> None:
    _print_models(client.get_local_models(), args.model, args.raw)


def cmd_ps(client: OllamaClient, args) -> None:
    _print_models(client.get_running_models(), args.model, args.raw)


COMMANDS = {
    "generate": cmd_generate,
    "chat": cmd_chat,
    "show": cmd_show,
    "copy": cmd_copy,
    "delete": cmd_delete,
    "pull": cmd_pull,
    "embeddings": cmd_embeddings,
    "list": cmd_list,
    "ps": cmd_ps,
}


# ── Entry point ────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ollama-stream",
        description="ollama-stream — stream responses from a local Ollama server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""
            Examples:
              ollama-stream generate "write a haiku about llamas"
              ollama-stream -m llama3.2 chat
              ollama-stream --raw pull llama3.2
        """),
    )
    parser.add_argument("-m", "--model", default=None, help="Model to use")
    parser.add_argument("--url", default=None, help="Ollama base URL (default: $OLLAMA_URL or config)")
    parser.add_argument("--keep-alive", type=int, default=None, metavar="SECONDS",
                        help="How long the server keeps the model loaded")
    parser.add_argument("--raw", action="store_true", help="Print raw JSON instead of formatted output")
    parser.add_argument("--skip-bad-json", action="store_true",
                        help="Skip malformed objects in a stream instead of aborting")
    parser.add_argument(
        "--log-file", default=None, metavar="PATH",
        help="Write logs to this file (default: auto-generated under ~/.local/share/ollama-stream/logs/)"
    )
    parser.add_argument(
        "--log-level", default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log verbosity (default: INFO)"
    )
    parser.add_argument("--log-console", action="store_true", help="Also print log output to stderr")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("generate", help="Generate a completion for a prompt")
    p.add_argument("prompt")
    p.add_argument("--no-stream", action="store_true", help="Wait for the whole response")

    p = sub.add_parser("chat", help="Chat with a model (interactive without MESSAGE)")
    p.add_argument("message", nargs="?")

    p = sub.add_parser("show", help="Show model details")
    p.add_argument("name", nargs="?")
    p.add_argument("--verbose", action="store_true")

    p = sub.add_parser("copy", help="Copy a model under a new name")
    p.add_argument("destination")
    p.add_argument("--source", default=None)

    p = sub.add_parser("delete", help="Delete a model")
    p.add_argument("name", nargs="?")

    p = sub.add_parser("pull", help="Pull a model from the registry")
    p.add_argument("name", nargs="?")
    p.add_argument("--insecure", action="store_true")

    p = sub.add_parser("embeddings", help="Compute an embedding for a prompt")
    p.add_argument("prompt")

    sub.add_parser("list", help="List local models")
    sub.add_parser("ps", help="List running models")
    return parser


def make_client(config: ClientConfig, args) -> OllamaClient:
    policy = DecodePolicy.SKIP if args.skip_bad_json else DecodePolicy.ABORT
    return OllamaClient.from_config(config, policy=policy)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    setup_logging(args.log_level, log_file=args.log_file or default_log_file(), console=args.log_console)

    try:
        config = load_config()
    except ValueError as e:
        console.print(f"[red]Config error:[/red] {escape(str(e))}")
        log.error("Invalid configuration: %s", e)
        return 1

    overrides = {}
    if args.url:
        overrides["base_url"] = normalize_base_url(args.url)
    if args.model:
        overrides["model"] = args.model
    if args.keep_alive is not None:
        overrides["keep_alive"] = args.keep_alive
    config = dataclasses.replace(config, **overrides)
    args.model = config.model

    log.info("Command %s: model=%s url=%s", args.command, config.model, config.base_url)

    with make_client(config, args) as client:
        try:
            COMMANDS[args.command](client, args)
        except OllamaError as e:
            console.print(f"[red]Error:[/red] {escape(str(e))}")
            log.error("Command %s failed: %s", args.command, e)
            return 1

    if config.model:
        cfg = read_config_file()
        if cfg.get("default_model") != config.model:
            cfg["default_model"] = config.model
            save_config(cfg)
    return 0


if __name__ == "__main__":
    sys.exit(main())
