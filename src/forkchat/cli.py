"""forkchat CLI: a chat REPL with side branches that merge back.

Usage:
    forkchat chat                        # New conversation (deep mode)
    forkchat chat --mode fast            # Default to fast replies
    forkchat chat --thread <id>          # Resume a stored thread
    forkchat threads                     # List stored threads
    forkchat show <thread-id>            # Print a stored thread
    forkchat config                      # Show configuration
    forkchat config <key>=<value>        # Set configuration
"""

import asyncio
import json
import logging

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from forkchat.chain import CHAIN_RESET_NOTICE
from forkchat.config import FORKCHAT_LOGS, ForkchatConfig, ensure_forkchat_home
from forkchat.errors import BranchError, ChainResetRetryFailed, ForkchatError, MergeError
from forkchat.events import EVENT_CHAIN_RESET
from forkchat.merge import describe_merge_failure
from forkchat.models import Branch, CloseOutcome, MergeMode, Mode, Role
from forkchat.session import ChatSession
from forkchat.store import ChatStore

console = Console()

REPL_HELP = """[bold]Commands[/]
  /fork [N]            fork from assistant reply N (default: latest)
  /open ID             open an existing branch
  /branches            list branches
  /include on|off      include the open branch in main when closed
  /include-mode M      summary | full
  /branch-mode M       fast | deep
  /close               close the open branch (merging when included)
  /main                leave the branch without closing it
  /reset               start a fresh conversation
  /status              show session status
  /quit                exit"""

ROLE_STYLES = {
    Role.USER: "bold cyan",
    Role.ASSISTANT: "green",
    Role.CONTEXT: "dim magenta",
}


def _run_async(coro):
    """Run async function from sync context."""
    return asyncio.run(coro)


def _setup_logging(verbose: bool) -> None:
    ensure_forkchat_home()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        filename=str(FORKCHAT_LOGS / "forkchat.log"),
    )
    # Request lines from httpx would drown the chain logs
    logging.getLogger("httpx").setLevel(logging.WARNING)


@click.group()
def cli():
    """forkchat: branchable chat over a stateful completion API."""
    pass


# --- Chat ---


@cli.command()
@click.option("--mode", "-m", type=click.Choice(["fast", "deep"]), default="deep", help="Main chat mode")
@click.option("--thread", "-t", "thread_id", default=None, help="Resume a stored thread")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def chat(mode, thread_id, verbose):
    """Start an interactive chat session."""
    _setup_logging(verbose)
    cfg = ForkchatConfig.load()
    if not cfg.gateway.api_key:
        console.print("[bold red]OPENAI_API_KEY not configured[/]")
        raise SystemExit(1)
    _run_async(_chat_loop(cfg, Mode(mode), thread_id))


def _print_turn(role: Role, text: str, prefix: str = "") -> None:
    label = {Role.USER: "you", Role.ASSISTANT: "assistant", Role.CONTEXT: "context"}[role]
    console.print(f"{prefix}[{ROLE_STYLES[role]}]{label}>[/] {text}")


def _on_event(event: dict) -> None:
    if event["event_type"] == EVENT_CHAIN_RESET:
        reason = (event.get("metadata") or {}).get("reason")
        if reason == "retry_succeeded":
            console.print(f"[yellow]{CHAIN_RESET_NOTICE}[/]")


async def _chat_loop(cfg: ForkchatConfig, mode: Mode, thread_id: str | None) -> None:
    session = ChatSession(cfg)
    session.events.add_listener(_on_event)
    current: Branch | None = None

    if thread_id:
        try:
            for turn in session.load_thread(thread_id):
                _print_turn(turn.role, turn.text)
        except (KeyError, RuntimeError) as e:
            console.print(f"[red]{e}[/]")
            await session.aclose()
            return

    console.print(f"\n[bold blue]forkchat[/] [dim]({mode.value} mode, /help for commands)[/]\n")
    try:
        while True:
            prompt = f"[{current.title}] > " if current else "> "
            try:
                line = await asyncio.to_thread(console.input, prompt)
            except (EOFError, KeyboardInterrupt):
                break
            line = line.strip()
            if not line:
                continue

            if line.startswith("/"):
                command, _, arg = line[1:].partition(" ")
                if command in ("quit", "exit"):
                    break
                current = await _handle_command(session, current, command, arg.strip())
                continue

            try:
                if current is not None:
                    reply = await session.send_in_branch(current, line)
                    _print_turn(Role.ASSISTANT, reply.text, prefix="  ")
                else:
                    with console.status("[dim]thinking...[/]"):
                        reply = await session.send(line, mode)
                    _print_turn(Role.ASSISTANT, reply.text)
            except ChainResetRetryFailed as e:
                console.print(f"[bold red]{e}[/]")
            except ForkchatError as e:
                console.print(f"[red]Error: {e}[/]")
    finally:
        await session.aclose()


async def _handle_command(session: ChatSession, current: Branch | None, command: str, arg: str):
    """Run one slash command; returns the branch left open afterwards."""
    try:
        if command == "help":
            console.print(REPL_HELP)
        elif command == "fork":
            branch = session.fork(int(arg) if arg else None)
            console.print(f"[magenta]Opened {branch.title}[/] [dim]({branch.id[:8]})[/]")
            return branch
        elif command == "open":
            branch = session.branches.get(arg)
            for turn in branch.turns:
                _print_turn(turn.role, turn.text, prefix="  ")
            return branch
        elif command == "branches":
            _print_branches(session)
        elif command in ("include", "include-mode", "branch-mode", "close"):
            if current is None:
                console.print("[yellow]No branch open[/]")
            elif command == "include":
                session.branches.set_include(current, arg == "on")
                console.print(f"[dim]{current.title} include in main: {current.include_in_main}[/]")
            elif command == "include-mode":
                session.branches.set_include(current, current.include_in_main, MergeMode(arg))
                console.print(f"[dim]{current.title} merges as {arg}[/]")
            elif command == "branch-mode":
                session.branches.set_mode(current, Mode(arg))
                console.print(f"[dim]{current.title} mode: {arg}[/]")
            else:
                return await _close(session, current)
        elif command == "main":
            return None
        elif command == "reset":
            session.reset()
            console.print("[dim]Conversation cleared[/]")
            return None
        elif command == "status":
            _print_status(session.get_status())
        else:
            console.print(f"[red]Unknown command: /{command}[/]")
    except ValueError as e:
        console.print(f"[red]Invalid argument: {e}[/]")
    except BranchError as e:
        console.print(f"[red]{e}[/]")
    return current


async def _close(session: ChatSession, branch: Branch) -> Branch | None:
    try:
        with console.status("[dim]merging...[/]"):
            outcome = await session.close_branch(branch)
    except MergeError as e:
        console.print(f"[red]{describe_merge_failure(e)}[/]")
        return branch

    if outcome is CloseOutcome.MERGED:
        _print_turn(Role.CONTEXT, session.merger.last_merge.context_text)
    elif outcome is CloseOutcome.IN_PROGRESS:
        console.print(f"[yellow]{branch.title} is already merging[/]")
        return branch
    else:
        console.print(f"[dim]{branch.title} closed ({outcome.value})[/]")
    return None


def _print_branches(session: ChatSession) -> None:
    branches = session.branches.all()
    if not branches:
        console.print("[dim]No branches yet. Use /fork[/]")
        return
    table = Table(title="Branches")
    table.add_column("ID", style="dim")
    table.add_column("Title")
    table.add_column("Turns")
    table.add_column("Mode")
    table.add_column("Include")
    table.add_column("Merged")
    for b in branches:
        include = f"{b.include_mode.value}" if b.include_in_main else "-"
        merged = f"[green]{b.merged_as.value}[/]" if b.merged_into_main else "-"
        table.add_row(b.id[:8], b.title, str(len(b.turns)), b.mode.value, include, merged)
    console.print(table)


def _print_status(status: dict) -> None:
    chain = status["chain"]
    table = Table(show_header=False, box=None)
    table.add_row("Thread", (status["thread_id"] or "-")[:8])
    table.add_row("Turns", str(chain["turns"]))
    table.add_row("Pending", str(chain["pending"]))
    table.add_row("Head", chain["continuation_token"] or "-")
    table.add_row("Chain resets", str(chain["resets"]))
    table.add_row("Branches", str(status["branches"]["branches"]))
    table.add_row("Merged", str(status["branches"]["merged"]))
    gateway = status.get("gateway") or {}
    if gateway:
        table.add_row("Requests", str(gateway["request_count"]))
        table.add_row("Avg latency", f"{gateway['avg_latency_ms']}ms")
    console.print(Panel(table, title="Session", border_style="blue"))


# --- Threads ---


@cli.command()
@click.option("--limit", "-n", default=20, help="Number of threads to show")
def threads(limit):
    """List stored threads."""
    cfg = ForkchatConfig.load()
    store = ChatStore(cfg.store.db_path, owner=cfg.store.owner)
    stored = store.list_threads(limit=limit)
    if not stored:
        console.print("[dim]No threads yet. Run: forkchat chat[/]")
        return

    table = Table(title="Threads")
    table.add_column("ID", style="dim")
    table.add_column("Title")
    table.add_column("Category")
    table.add_column("Messages")
    for t in stored:
        table.add_row(t.id[:8], t.title, t.category, str(store.count_messages(t.id)))
    console.print(table)


@cli.command()
@click.argument("thread_id")
def show(thread_id):
    """Print a stored thread's messages."""
    cfg = ForkchatConfig.load()
    store = ChatStore(cfg.store.db_path, owner=cfg.store.owner)
    thread = store.get_thread(thread_id)
    if thread is None:
        matches = [t for t in store.list_threads(limit=1000) if t.id.startswith(thread_id)]
        thread = store.get_thread(matches[0].id) if len(matches) == 1 else None
    if thread is None:
        console.print(f"[red]Thread {thread_id} not found[/]")
        return

    console.print(Panel(f"[bold]{thread.title}[/]", title=f"Thread {thread.id[:8]}"))
    for m in thread.messages:
        _print_turn(Role(m.role), m.text)


# --- Configuration ---


@cli.command()
@click.argument("key_value", nargs=-1)
def config(key_value):
    """View or set forkchat configuration.

    Examples:
        forkchat config                              # show all
        forkchat config models.chat=gpt-5-mini       # pin the chat model
        forkchat config merge.summarize_timeout=45   # summarizer timeout (s)
    """
    cfg = ForkchatConfig.load()
    if not key_value:
        console.print_json(json.dumps({
            "gateway": {
                "base_url": cfg.gateway.base_url,
                "api_key": "set" if cfg.gateway.api_key else "missing",
                "request_timeout": cfg.gateway.request_timeout,
            },
            "models": {
                "chat": cfg.models.chat or "(default)",
                "fast": cfg.models.fast or "(chat)",
                "deep": cfg.models.deep or "(chat)",
                "summarize": cfg.models.summarize,
            },
            "merge": {
                "skip_summarization_threshold": cfg.merge.skip_summarization_threshold,
                "summarize_timeout": cfg.merge.summarize_timeout,
                "max_bullets": cfg.merge.max_bullets,
            },
            "store": {
                "db_path": cfg.store.db_path,
                "enabled": cfg.store.enabled,
                "owner": cfg.store.owner,
            },
        }))
        return

    kv = " ".join(key_value)
    if "=" not in kv:
        console.print("[yellow]Usage: forkchat config key=value[/]")
        return

    key, value = (s.strip() for s in kv.split("=", 1))
    section_name, _, field_name = key.partition(".")
    section = getattr(cfg, section_name, None)
    if section is None or not field_name or not hasattr(section, field_name):
        console.print(f"[red]Unknown config key: {key}[/]")
        return

    current = getattr(section, field_name)
    try:
        if isinstance(current, bool):
            parsed = value.lower() in ("1", "true", "yes", "on")
        elif isinstance(current, int):
            parsed = int(value)
        elif isinstance(current, float):
            parsed = float(value)
        else:
            parsed = value
    except ValueError:
        console.print(f"[red]Invalid value for {key}: {value}[/]")
        return

    setattr(section, field_name, parsed)
    cfg.save()
    console.print(f"[green]Set {key} = {value}[/]")


def main():
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
