"""claudechat — command-line entry point."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.table import Table

from claudechat.adapters.chat_controller import ChatController
from claudechat.engine.config import ChatConfig
from claudechat.engine.process import ProcessStreamManager, RunStatus
from claudechat.engine.yaml_config import discover_config, load_yaml_config
from claudechat.shared.models.session import Session
from claudechat.shared.services.persistence import SessionPersistence
from claudechat.shared.services.session_export import export_filename
from claudechat.shared.services.session_store import SessionStore

logger = logging.getLogger(__name__)

LOG_DIR = Path.home() / ".claudechat" / "logs"

REPL_HELP = """\
Commands:
  /new [NAME]      start a new session
  /sessions        list sessions
  /switch ID       switch to a session (id prefix is enough)
  /rename NAME     rename the current session
  /clear           clear the current session's history
  /regenerate      ask the last question again
  /export          write the current session to Markdown
  /exit            quit
Ctrl+C stops the answer being generated."""


def _configure_logging(level_name: str, verbose: bool) -> Path:
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOG_DIR / "claudechat.log"

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    if verbose:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    return log_file


def _load_config(config_path: str | None, cwd_override: str | None) -> ChatConfig:
    config = ChatConfig.from_env()
    path = Path(config_path) if config_path else discover_config(Path.cwd())
    if path is not None:
        config = load_yaml_config(path, base=config)
    if cwd_override:
        config.cwd = str(Path(cwd_override).expanduser().resolve())
    return config


def resolve_session(store: SessionStore, ref: str) -> Session | None:
    """Exact id match, else a unique id prefix match."""
    session = store.get(ref)
    if session is not None:
        return session
    matches = [s for s in store.sessions if s.id.startswith(ref)]
    if len(matches) == 1:
        return matches[0]
    return None


def _sessions_table(store: SessionStore) -> Table:
    table = Table(title="Sessions")
    table.add_column("", width=1)
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Messages", justify="right")
    table.add_column("Updated")
    table.add_column("Claude session")
    current_id = store.current_session_id
    for session in store.sessions:
        table.add_row(
            "*" if session.id == current_id else "",
            session.id[:8],
            session.name,
            str(session.message_count),
            session.updated_at.astimezone().strftime("%Y-%m-%d %H:%M"),
            (session.external_session_id or "-")[:8],
        )
    return table


def _write_export(
    console: Console,
    controller: ChatController,
    session: Session,
) -> Path | None:
    content = controller.export_markdown(session.id)
    if content is None:
        console.print("[yellow]Nothing to export[/yellow]")
        return None
    path = Path.cwd() / export_filename(session)
    path.write_text(content, encoding="utf-8")
    console.print(f"[green]Exported[/green] {path}")
    return path


async def _ask(console: Console, controller: ChatController, prompt: str) -> None:
    """Stream one answer to the console; Ctrl+C stops generation."""
    loop = asyncio.get_running_loop()
    handler_installed = False
    try:
        loop.add_signal_handler(
            signal.SIGINT, lambda: asyncio.ensure_future(controller.stop())
        )
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        # No loop signal handlers on this platform.
        pass

    def _print(text: str) -> None:
        console.print(text, end="", markup=False, highlight=False, soft_wrap=True)

    try:
        message = await controller.submit(prompt, on_fragment=_print)
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
    console.print()
    outcome = controller.last_outcome
    if message is not None and outcome is not None and outcome.status == RunStatus.FAILURE:
        console.print(str(outcome.error), style="red", markup=False, highlight=False)


async def _run_prompt(console: Console, controller: ChatController, prompt: str) -> None:
    try:
        await _ask(console, controller, prompt)
    finally:
        await controller.close()


async def _repl(console: Console, controller: ChatController) -> None:
    store = controller.store
    console.print(
        f"[bold]claudechat[/bold] — session [cyan]{store.current_session.name}[/cyan]. "
        "Type /help for commands."
    )
    try:
        while True:
            try:
                line = await asyncio.to_thread(console.input, "[bold green]> [/bold green]")
            except (EOFError, KeyboardInterrupt):
                console.print()
                break
            line = line.strip()
            if not line:
                continue
            if not line.startswith("/"):
                await _ask(console, controller, line)
                continue

            cmd, _, arg = line.partition(" ")
            arg = arg.strip()
            if cmd in ("/exit", "/quit"):
                break
            if cmd == "/help":
                console.print(REPL_HELP, markup=False)
            elif cmd == "/new":
                session = controller.new_session(arg or None)
                console.print(f"[green]New session[/green] {session.name}")
            elif cmd == "/sessions":
                console.print(_sessions_table(store))
            elif cmd == "/switch":
                target = resolve_session(store, arg) if arg else None
                if target is None or not controller.switch_session(target.id):
                    console.print(f"[red]Session '{arg}' not found[/red]")
                else:
                    console.print(
                        f"[green]Switched to[/green] {target.name} "
                        f"({target.message_count} messages)"
                    )
            elif cmd == "/rename":
                if not arg:
                    console.print("[yellow]Usage: /rename NAME[/yellow]")
                else:
                    controller.rename_session(store.current_session.id, arg)
            elif cmd == "/clear":
                controller.clear_history()
                console.print("[dim]History cleared[/dim]")
            elif cmd == "/regenerate":
                message = await controller.regenerate_last(
                    on_fragment=lambda t: console.print(
                        t, end="", markup=False, highlight=False, soft_wrap=True
                    )
                )
                console.print()
                if message is None:
                    console.print("[yellow]Nothing to regenerate[/yellow]")
            elif cmd == "/export":
                _write_export(console, controller, store.current_session)
            else:
                console.print(f"[red]Unknown command {cmd}[/red] (try /help)")
    finally:
        await controller.close()


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="claudechat",
        description="Chat with the Claude Code CLI across resumable sessions",
    )
    parser.add_argument(
        "prompt", nargs="?", default=None,
        help="Prompt to send in the current session",
    )
    parser.add_argument(
        "--repl", action="store_true",
        help="Interactive chat loop",
    )
    parser.add_argument(
        "--new", nargs="?", const="", metavar="NAME", default=None,
        help="Start a new session (optionally named) and make it current",
    )
    parser.add_argument(
        "--session", metavar="ID",
        help="Switch to a session by id or id prefix",
    )
    parser.add_argument(
        "--list", action="store_true",
        help="List sessions and exit",
    )
    parser.add_argument(
        "--rename", nargs=2, metavar=("ID", "NAME"),
        help="Rename a session and exit",
    )
    parser.add_argument(
        "--delete", metavar="ID",
        help="Delete a session and exit",
    )
    parser.add_argument(
        "--clear", action="store_true",
        help="Clear the current session's history",
    )
    parser.add_argument(
        "--export", nargs="?", const="", metavar="ID", default=None,
        help="Export a session (default: current) to Markdown and exit",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: .claudechat/config.yaml or claudechat.yaml)",
    )
    parser.add_argument(
        "--cwd", default=None,
        help="Working directory for the Claude CLI",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Debug logging, also echoed to stderr",
    )
    args = parser.parse_args()

    console = Console()
    config = _load_config(args.config, args.cwd)
    log_file = _configure_logging(
        config.log_level, args.verbose,
    )
    logger.info("Starting claudechat cwd=%s log=%s", Path.cwd(), log_file)

    persistence = SessionPersistence(config.data_path)
    store = SessionStore()
    persistence.load_into(store)
    persistence.attach(store)
    manager = ProcessStreamManager(config)
    controller = ChatController(store, manager)

    if args.delete:
        target = resolve_session(store, args.delete)
        if target is None or not controller.delete_session(target.id):
            console.print(f"[red]Session '{args.delete}' not found[/red]")
            sys.exit(1)
        console.print(f"[green]Deleted[/green] {target.name}")
        sys.exit(0)

    if args.rename:
        ref, name = args.rename
        target = resolve_session(store, ref)
        if target is None or not controller.rename_session(target.id, name):
            console.print(f"[red]Session '{ref}' not found[/red]")
            sys.exit(1)
        console.print(f"[green]Renamed[/green] {target.id[:8]} to {name}")
        sys.exit(0)

    if args.new is not None:
        session = controller.new_session(args.new or None)
        console.print(f"[green]New session[/green] {session.name}")
    elif args.session:
        target = resolve_session(store, args.session)
        if target is None or not controller.switch_session(target.id):
            console.print(f"[red]Session '{args.session}' not found[/red]")
            sys.exit(1)

    if args.clear:
        controller.clear_history()
        console.print("[dim]History cleared[/dim]")

    if args.list:
        console.print(_sessions_table(store))
        sys.exit(0)

    if args.export is not None:
        target = resolve_session(store, args.export) if args.export else store.current_session
        if target is None:
            console.print(f"[red]Session '{args.export}' not found[/red]")
            sys.exit(1)
        sys.exit(0 if _write_export(console, controller, target) else 1)

    if args.repl:
        asyncio.run(_repl(console, controller))
    elif args.prompt:
        asyncio.run(_run_prompt(console, controller, args.prompt))
    elif args.new is None and not args.session and not args.clear:
        parser.print_help()


if __name__ == "__main__":
    main()
