"""
CLI for chatting with a card workspace.

Usage:
    cardrecall ask "what does the villain want"
    cardrecall preview "what does the villain want"
    cardrecall search "castle" --scope category:plot
    cardrecall reindex
    cardrecall suggest CARD_ID --action next-scene --option twist
    cardrecall summarize CARD_ID --children
    cardrecall threads
"""

import json
import os
from dataclasses import asdict
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .cards import JsonCardRepository, ThreadScope
from .engine import Workspace
from .errors import CardRecallError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .retrieval import RetrievalResult
from .types import ContextPreview

# Set CARDRECALL_VERBOSE=1 to enable debug mode via environment
if os.environ.get("CARDRECALL_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"cardrecall {version('cardrecall')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_workspace_override: Optional[Path] = None
_cards_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _workspace_callback(value: Optional[Path]):
    global _workspace_override
    if value is not None:
        _workspace_override = value


def _cards_callback(value: Optional[Path]):
    global _cards_override
    if value is not None:
        _cards_override = value


app = typer.Typer(
    name="cardrecall",
    help="Chat about a workspace of story cards.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    workspace: Annotated[Optional[Path], typer.Option(
        "--workspace", "-w",
        envvar="CARDRECALL_WORKSPACE",
        help="Path to the workspace directory",
        callback=_workspace_callback,
        is_eager=True,
    )] = None,
    cards: Annotated[Optional[Path], typer.Option(
        "--cards", "-c",
        help="Card export to read (default: cards.json in the workspace)",
        callback=_cards_callback,
        is_eager=True,
    )] = None,
):
    """Chat about a workspace of story cards."""


ThreadOption = Annotated[
    Optional[str],
    typer.Option(
        "--thread", "-t",
        help="Thread ID (default: the active thread)"
    )
]


# -----------------------------------------------------------------------------
# Output Formatting
# -----------------------------------------------------------------------------

def render_preview(preview: ContextPreview, as_json: bool = False) -> str:
    """Context blocks under the same headings the prompt uses."""
    if as_json:
        return json.dumps(asdict(preview), indent=2, ensure_ascii=False)
    sections = [
        f"[Thread scope]\n{preview.scope_label}",
        f"[Focused context]\n{preview.scoped_context}",
        f"[Question-related cards]\n{preview.retrieval_context}",
    ]
    for category, summary in preview.lane_summaries.items():
        sections.append(f"[Lane summary: {category}]\n{summary}")
    sections.extend([
        f"[Thread rolling summary]\n{preview.rolling_summary}",
        f"[Recent conversation]\n{preview.history_summary}",
        f"[User's latest question]\n{preview.question}",
    ])
    return "\n\n".join(sections)


def render_retrieval(result: RetrievalResult, as_json: bool = False) -> str:
    if as_json:
        return json.dumps({
            "strategy": result.strategy,
            "model": result.model,
            "results": [
                {
                    "id": item.card.id,
                    "category": item.card.category,
                    "score": round(item.score, 4),
                    "scoped": item.scoped,
                }
                for item in result.ranked
            ],
        }, indent=2, ensure_ascii=False)
    return result.text


def _thread_line(thread, active_id: Optional[str]) -> str:
    marker = "*" if thread.id == active_id else " "
    count = len(thread.messages)
    noun = "message" if count == 1 else "messages"
    return f"{marker} {thread.id}  {thread.updated_at[:19]}  {thread.title} [{thread.scope.name}, {count} {noun}]"


# -----------------------------------------------------------------------------
# Workspace
# -----------------------------------------------------------------------------

def _get_workspace() -> Workspace:
    """Open the workspace, handling errors gracefully."""
    import atexit

    try:
        card_repository = JsonCardRepository(_cards_override) if _cards_override else None
        ws = Workspace(_workspace_override, cards=card_repository)
    except (CardRecallError, ValueError, OSError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    # Flush debounced writes before interpreter shutdown
    atexit.register(ws.close)
    return ws


def _parse_scope(value: Optional[str]) -> Optional[ThreadScope]:
    if value is None:
        return None
    try:
        return ThreadScope.parse(value)
    except CardRecallError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def ask(
    question: Annotated[str, typer.Argument(help="Question about the cards")],
    thread: ThreadOption = None,
    show_context: Annotated[bool, typer.Option(
        "--context",
        help="Print the context blocks before the answer"
    )] = False,
):
    """
    Ask a question on a thread and print the answer.
    """
    ws = _get_workspace()
    try:
        result = ws.ask(question, thread_id=thread)
    except (CardRecallError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if _get_json_output():
        payload = result.to_dict()
        if show_context:
            payload["context"] = asdict(result.preview)
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
    else:
        if show_context:
            typer.echo(render_preview(result.preview))
            typer.echo("")
        typer.echo(result.answer)
    if not result.ok:
        raise typer.Exit(1)


@app.command()
def preview(
    question: Annotated[str, typer.Argument(help="Question to build context for")],
    thread: ThreadOption = None,
):
    """
    Show the context that would be sent for a question, without asking.
    """
    ws = _get_workspace()
    try:
        context = ws.preview(question, thread_id=thread)
    except CardRecallError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(render_preview(context, as_json=_get_json_output()))


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search query text")],
    scope: Annotated[Optional[str], typer.Option(
        "--scope",
        help="Boost cards in scope: 'selected' or 'category:<name>'"
    )] = None,
):
    """
    List the cards most related to a query.
    """
    ws = _get_workspace()
    try:
        result = ws.search(query, scope=_parse_scope(scope))
    except CardRecallError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(render_retrieval(result, as_json=_get_json_output()))


@app.command()
def reindex():
    """
    Embed changed cards and rebuild the local index.
    """
    ws = _get_workspace()
    try:
        result = ws.reindex()
    except CardRecallError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if _get_json_output():
        typer.echo(json.dumps(result.to_dict(), indent=2))
        return
    typer.echo(f"Embedded {result.embedded} card(s) with {result.model}; {result.records} in index")
    if not result.synced:
        typer.echo("Local index not updated; search will rank in memory", err=True)


@app.command()
def suggest(
    card_id: Annotated[str, typer.Argument(help="ID of a plot card")],
    action: Annotated[str, typer.Option(
        "--action", "-a",
        help="elaborate, next-scene or alternative"
    )] = "elaborate",
    option: Annotated[Optional[list[str]], typer.Option(
        "--option", "-o",
        help="Generation option, e.g. conflict or twist (repeatable)"
    )] = None,
):
    """
    Suggest five new versions of a plot card.
    """
    ws = _get_workspace()
    try:
        result = ws.suggest(card_id, action, option)
    except (CardRecallError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if _get_json_output():
        typer.echo(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
        return
    blocks = []
    for i, item in enumerate(result.suggestions, 1):
        block = f"{i}. {item.title}\n   {item.content}"
        if item.rationale:
            block += f"\n   ({item.rationale})"
        blocks.append(block)
    typer.echo("\n\n".join(blocks))


@app.command()
def summarize(
    card_id: Annotated[str, typer.Argument(help="ID of the card to summarize")],
    children: Annotated[bool, typer.Option(
        "--children",
        help="Summarize the card's child cards instead"
    )] = False,
):
    """
    Summarize a card, or its child cards.
    """
    ws = _get_workspace()
    try:
        result = ws.summarize(card_id, children=children)
    except (CardRecallError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if _get_json_output():
        typer.echo(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
        return
    typer.echo(result.text)


@app.command()
def threads(
    new: Annotated[bool, typer.Option(
        "--new",
        help="Start a new thread and make it active"
    )] = False,
    scope: Annotated[Optional[str], typer.Option(
        "--scope",
        help="Scope for --new: 'selected' (default) or 'category:<name>'"
    )] = None,
    select: Annotated[Optional[str], typer.Option(
        "--select",
        help="Make a thread active"
    )] = None,
    delete: Annotated[Optional[str], typer.Option(
        "--delete",
        help="Delete a thread"
    )] = None,
):
    """
    List conversation threads, or create, select or delete one.
    """
    ws = _get_workspace()
    try:
        if new:
            ws.new_thread(_parse_scope(scope))
        if select:
            ws.select_thread(select)
        if delete and not ws.delete_thread(delete):
            typer.echo(f"Not found: {delete}", err=True)
            raise typer.Exit(1)
    except CardRecallError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    items = ws.list_threads()
    active_id = ws.threads.active_id
    if _get_json_output():
        typer.echo(json.dumps([
            {
                "id": t.id,
                "title": t.title,
                "scope": t.scope.name,
                "messages": len(t.messages),
                "updated_at": t.updated_at,
                "active": t.id == active_id,
            }
            for t in items
        ], indent=2, ensure_ascii=False))
        return
    if not items:
        typer.echo("No threads.")
        return
    for t in items:
        typer.echo(_thread_line(t, active_id))


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="cardrecall CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
