"""Command line interface for the project agent."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import click

from ai_project_agent.core.utils.config import Settings, load_settings
from ai_project_agent.core.utils.logger import configure_logging, get_logger
from ai_project_agent.session import JsonlHistoryStore, SessionManager, UnsafeHistoryPathError

from .utils import StreamPrinter, _build_context, build_session_config, get_manager

LOGGER = get_logger(__name__)

POLL_INTERVAL = 0.1
EXIT_COMMANDS = {"/exit", "/quit"}


@click.group()
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Path to config file.")
@click.option("--verbose", is_flag=True, help="Enable verbose logging output.")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """Chat with an AI agent about one project at a time."""
    settings = load_settings(config_path)
    if verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings.log_level, structured=settings.structured_logging)
    ctx.obj = _build_context(settings)


def _run_turn(manager: SessionManager, settings: Settings, project_id: str, content: str, model: str) -> bool:
    """Send ``content`` and block until the generation settles; Ctrl-C cancels it.

    Returns whether the generation ended without an error.
    """
    if not manager.send_message(project_id, content, model):
        click.secho("A response is already being generated for this project.", fg="yellow", err=True)
        return False
    try:
        while not manager.wait_for_generation(project_id, timeout=POLL_INTERVAL):
            pass
    except KeyboardInterrupt:
        manager.stop_generation(project_id)
        manager.wait_for_generation(project_id, timeout=settings.cancel_wait_timeout)
        click.secho("[cancelled]", fg="yellow", err=True)
        return True

    session = manager.require_session(project_id)
    result = session.last_result
    click.secho(session.cost_tracker.format_inline(), fg="bright_black", err=True)
    if result is not None and result.status == "budget_exhausted":
        click.secho(f"[stopped after {result.steps} steps]", fg="yellow", err=True)
    return result is None or result.status != "failed"


@cli.command()
@click.argument("project_id")
@click.option("--model", "provider_model", help="Model as provider/model, e.g. openrouter/openai/gpt-4o.")
@click.option("--message", "-m", "message", help="Send a single message and exit.")
@click.option("--project-name", help="Display name of the project.")
@click.option("--new", "new_session", is_flag=True, help="Start a fresh history instead of resuming.")
@click.pass_context
def chat(
    ctx: click.Context,
    project_id: str,
    provider_model: Optional[str],
    message: Optional[str],
    project_name: Optional[str],
    new_session: bool,
) -> None:
    """Chat with the agent about PROJECT_ID, resuming its latest history."""
    settings: Settings = ctx.obj["settings"]
    manager = get_manager(ctx)
    model = provider_model or settings.default_model
    session = manager.ensure_session(build_session_config(settings, project_id, project_name=project_name))
    if new_session:
        manager.start_new_session(project_id)
    elif session.messages:
        click.secho(
            f"Resuming {session.session_name} ({len(session.messages)} messages)",
            fg="bright_black",
            err=True,
        )

    printer = StreamPrinter(manager, project_id)
    try:
        if message is not None:
            if not _run_turn(manager, settings, project_id, message, model):
                ctx.exit(1)
            return

        click.secho("Type /new to start over, /exit to quit.", fg="bright_black", err=True)
        while True:
            try:
                text = click.prompt("you", prompt_suffix="> ", default="", show_default=False)
            except click.Abort:
                click.echo()
                break
            text = text.strip()
            if not text:
                continue
            if text in EXIT_COMMANDS:
                break
            if text == "/new":
                manager.start_new_session(project_id)
                click.secho("Started a new session.", fg="bright_black", err=True)
                continue
            _run_turn(manager, settings, project_id, text, model)
    finally:
        printer.close()


@cli.command()
@click.argument("project_id")
@click.option("--session", "session_name", help="Show this session instead of the latest one.")
@click.option("--list", "list_sessions", is_flag=True, help="List stored sessions, newest first.")
@click.pass_context
def history(ctx: click.Context, project_id: str, session_name: Optional[str], list_sessions: bool) -> None:
    """Print the stored conversation of PROJECT_ID."""
    settings: Settings = ctx.obj["settings"]
    store = JsonlHistoryStore(settings.history_root)

    try:
        if list_sessions:
            names = store.list_sessions(project_id)
            if not names:
                click.echo(f"No stored sessions for {project_id}.")
            for name in names:
                click.echo(name)
            return

        stored = store.load(project_id, session_name) if session_name else store.load_latest(project_id)
    except UnsafeHistoryPathError as exc:
        raise click.ClickException(str(exc)) from exc
    if stored is None:
        raise click.ClickException(f"No stored history for {project_id}.")

    click.secho(f"# {stored.session_name}", bold=True)
    for message in stored.messages:
        if message.role == "tool":
            click.secho(f"tool[{message.tool_call_id}]: {message.content or ''}", fg="bright_black")
            continue
        if message.content:
            click.echo(f"{message.role}: {message.content}")
        for call in message.tool_calls or ():
            function = call.get("function") or {}
            click.secho(
                f"{message.role} -> {function.get('name', '?')}({function.get('arguments', '')})",
                fg="cyan",
            )


def main() -> None:
    cli(prog_name="ai-project-agent")


if __name__ == "__main__":  # pragma: no cover
    main()
