"""
CLI entry point for srscore.
"""

# Standard library imports
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

# Third-party imports
import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

# Local application imports
from srscore.config import settings
from srscore.db.database import SRSDatabase
from srscore.exceptions import DatabaseError, SuspendedCardError
from srscore.models import DeckOptions, DeckOptionsUpdate, QueueItem
from srscore.queue_builder import QueueBuilder
from srscore.review_processor import ReviewProcessor


console = Console()

app = typer.Typer(
    name="srscore",
    help="srscore: spaced repetition scheduling for study decks.",
    add_completion=False,
    rich_markup_mode="markdown",
)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


_db_option = typer.Option(  # noqa: B008
    None,
    "--db",
    help="Path to the DuckDB database file. "
    "Falls back to SRSCORE_DB_PATH or the configured default.",
    envvar="SRSCORE_DB_PATH",
)

_limit_option = typer.Option(  # noqa: B008
    None,
    "--limit",
    "-l",
    help="Maximum number of cards to return.",
)


def _resolve_db_path(db: Optional[Path]) -> Path:
    """Resolve db path from the CLI flag, falling back to settings."""
    if db is not None:
        return db
    return settings.db_path


def _clamp_limit(limit: Optional[int], default: int) -> int:
    """Clamp a requested queue size into [1, settings.max_queue_limit]."""
    if limit is None:
        limit = default
    return max(1, min(settings.max_queue_limit, limit))


def _parse_steps(raw: Optional[str]) -> Optional[List[int]]:
    """Parse a comma-separated minute ladder such as '10,1440'."""
    if raw is None:
        return None
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError as e:
        console.print(
            f"[bold red]Error: invalid step list '{raw}'. "
            "Expected comma-separated minutes.[/bold red]"
        )
        raise typer.Exit(code=1) from e


@contextmanager
def _open_db(db: Optional[Path]) -> Iterator[SRSDatabase]:
    """
    Open the database for one command and map storage and validation
    failures onto exit code 1.
    """
    db_path = _resolve_db_path(db)
    try:
        with SRSDatabase(db_path=db_path) as db_inst:
            yield db_inst
    except DatabaseError as e:
        console.print(
            f"[bold]A database error occurred: {escape(str(e))}[/bold]"
        )
        raise typer.Exit(code=1) from e
    except ValidationError as e:
        console.print(
            f"[bold red]Invalid input:[/bold red] {escape(str(e))}"
        )
        raise typer.Exit(code=1) from e


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else settings.log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(console=Console(stderr=True), show_path=False)
        ],
        force=True,
    )


@app.callback()
def _main_callback(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
):
    _configure_logging(verbose)


# ---------------------------------------------------------------------------
# Display helpers
# ---------------------------------------------------------------------------


def _display_options(cons: Console, deck_id: str, options: DeckOptions):
    table = Table(title=f"Options for deck {deck_id}", show_header=False)
    table.add_column("Option", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("New per day", str(options.new_per_day))
    table.add_row("Reviews per day", str(options.reviews_per_day))
    table.add_row(
        "Learning steps (min)",
        ", ".join(str(s) for s in options.learning_steps_minutes),
    )
    table.add_row(
        "Relearn steps (min)",
        ", ".join(str(s) for s in options.relearn_steps_minutes),
    )
    table.add_row("Leech threshold", str(options.leech_threshold))
    table.add_row("Bury siblings", str(options.bury_siblings))
    cons.print(table)


def _display_queue(cons: Console, title: str, items: List[QueueItem]):
    """
    Render queue items in order with their scheduling snapshot.

    Parameters:
        cons (Console): Rich Console used to print the table.
        items (List[QueueItem]): Items in queue order.
    """
    table = Table(title=title)
    table.add_column("#", style="dim")
    table.add_column("Card", style="cyan", no_wrap=True)
    table.add_column("Front")
    table.add_column("State", style="magenta")
    table.add_column("Due", style="yellow")
    table.add_column("Interval (d)")
    for position, item in enumerate(items, start=1):
        table.add_row(
            str(position),
            item.card_id,
            item.front,
            item.state.value,
            item.due_at.strftime("%Y-%m-%d %H:%M"),
            f"{item.interval_days:g}",
        )
    cons.print(table)


def _display_deck_stats(cons: Console, stats_data: dict):
    """
    Render and print a table of per-deck scheduling totals, joined with the
    7-day review summary.
    """
    weekly = {row["deck_id"]: row for row in stats_data["weekly_summary"]}
    decks_table = Table(title="Decks")
    decks_table.add_column("Deck", style="cyan")
    decks_table.add_column("Cards", style="magenta")
    decks_table.add_column("Suspended", style="red")
    decks_table.add_column("Due Now", style="yellow")
    decks_table.add_column("Reviews (7d)")
    decks_table.add_column("Passes (7d)")
    for deck in stats_data["decks"]:
        week = weekly.get(deck["deck_id"], {})
        decks_table.add_row(
            deck["title"],
            str(deck["total_cards"]),
            str(deck["suspended_cards"]),
            str(deck["due_now"]),
            str(week.get("reviews_7d", 0)),
            str(week.get("passes_7d", 0)),
        )
    cons.print(decks_table)


def _display_recent_reviews(cons: Console, stats_data: dict):
    recent_table = Table(title="Recent Reviews")
    recent_table.add_column("Reviewed At", style="yellow")
    recent_table.add_column("Deck", style="cyan")
    recent_table.add_column("Card", no_wrap=True)
    recent_table.add_column("Grade", style="magenta")
    for row in stats_data["recent_reviews"]:
        recent_table.add_row(
            row["reviewed_at"].strftime("%Y-%m-%d %H:%M"),
            row["deck_title"] or row["deck_id"],
            row["card_id"],
            str(row["grade"]),
        )
    cons.print(recent_table)


# ---------------------------------------------------------------------------
# Deck subcommand group
# ---------------------------------------------------------------------------

deck_app = typer.Typer(name="deck", help="Create decks and tune their options.")
app.add_typer(deck_app)


@deck_app.command("create")
def deck_create(
    title: str = typer.Argument(..., help="Deck title."),  # noqa: B008
    description: Optional[str] = typer.Option(  # noqa: B008
        None, "--description", "-d", help="Optional description."
    ),
    db: Optional[Path] = _db_option,
):
    """Create a deck with default scheduling options."""
    with _open_db(db) as db_inst:
        deck = db_inst.create_deck(title=title, description=description)
    console.print(
        f"[bold green]Created deck[/bold green] {deck.title}: {deck.id}"
    )


@deck_app.command("list")
def deck_list(db: Optional[Path] = _db_option):
    """List decks, newest first."""
    with _open_db(db) as db_inst:
        decks = db_inst.list_decks()
    if not decks:
        console.print("[yellow]No decks found.[/yellow]")
        return
    table = Table(title="Decks")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Title", style="cyan")
    table.add_column("Description")
    for deck in decks:
        table.add_row(deck.id, deck.title, deck.description or "")
    console.print(table)


@deck_app.command("options")
def deck_options(
    deck_id: str = typer.Argument(..., help="Deck id."),  # noqa: B008
    db: Optional[Path] = _db_option,
):
    """Show a deck's scheduling options, creating the defaults if absent."""
    with _open_db(db) as db_inst:
        options = db_inst.get_deck_options(deck_id)
    _display_options(console, deck_id, options)


@deck_app.command("set-options")
def deck_set_options(
    deck_id: str = typer.Argument(..., help="Deck id."),  # noqa: B008
    new_per_day: Optional[int] = typer.Option(None, "--new-per-day"),
    reviews_per_day: Optional[int] = typer.Option(None, "--reviews-per-day"),
    learning_steps: Optional[str] = typer.Option(
        None,
        "--learning-steps",
        help="Comma-separated learning steps in minutes, e.g. '10,1440'.",
    ),
    relearn_steps: Optional[str] = typer.Option(
        None,
        "--relearn-steps",
        help="Comma-separated relearning steps in minutes.",
    ),
    leech_threshold: Optional[int] = typer.Option(None, "--leech-threshold"),
    bury_siblings: Optional[bool] = typer.Option(
        None, "--bury-siblings/--no-bury-siblings"
    ),
    db: Optional[Path] = _db_option,
):
    """Update some of a deck's options; unspecified options are kept."""
    update = DeckOptionsUpdate(
        new_per_day=new_per_day,
        reviews_per_day=reviews_per_day,
        learning_steps_minutes=_parse_steps(learning_steps),
        relearn_steps_minutes=_parse_steps(relearn_steps),
        leech_threshold=leech_threshold,
        bury_siblings=bury_siblings,
    )
    with _open_db(db) as db_inst:
        options = db_inst.update_deck_options(deck_id, update)
    _display_options(console, deck_id, options)


# ---------------------------------------------------------------------------
# Tag subcommand group
# ---------------------------------------------------------------------------

tag_app = typer.Typer(name="tag", help="Manage card tags.")
app.add_typer(tag_app)


@tag_app.command("create")
def tag_create(
    name: str = typer.Argument(..., help="Tag name (max 64 characters)."),  # noqa: B008
    db: Optional[Path] = _db_option,
):
    """Create a tag."""
    with _open_db(db) as db_inst:
        tag = db_inst.create_tag(name)
    console.print(f"[bold green]Created tag[/bold green] {tag.name}: {tag.id}")


@tag_app.command("list")
def tag_list(db: Optional[Path] = _db_option):
    """List tags by name."""
    with _open_db(db) as db_inst:
        tags = db_inst.list_tags()
    if not tags:
        console.print("[yellow]No tags found.[/yellow]")
        return
    table = Table(title="Tags")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Name", style="cyan")
    for tag in tags:
        table.add_row(tag.id, tag.name)
    console.print(table)


# ---------------------------------------------------------------------------
# Card subcommand group
# ---------------------------------------------------------------------------

card_app = typer.Typer(name="card", help="Add and list cards.")
app.add_typer(card_app)


@card_app.command("add")
def card_add(
    deck_id: str = typer.Argument(..., help="Deck id."),  # noqa: B008
    front: str = typer.Argument(..., help="Question side."),  # noqa: B008
    back: str = typer.Argument(..., help="Answer side."),  # noqa: B008
    tag_ids: Optional[List[str]] = typer.Option(  # noqa: B008
        None, "--tag", "-t", help="Tag id to attach (repeatable)."
    ),
    source_type: str = typer.Option("manual", "--source-type"),
    source_id: Optional[str] = typer.Option(None, "--source-id"),
    db: Optional[Path] = _db_option,
):
    """Add a card to a deck."""
    with _open_db(db) as db_inst:
        card = db_inst.add_card(
            deck_id=deck_id,
            front=front,
            back=back,
            source_type=source_type,
            source_id=source_id,
            tag_ids=tag_ids,
        )
    console.print(f"[bold green]Added card[/bold green] {card.id}")


@card_app.command("list")
def card_list(
    deck_id: str = typer.Argument(..., help="Deck id."),  # noqa: B008
    db: Optional[Path] = _db_option,
):
    """List the cards of a deck, newest first."""
    with _open_db(db) as db_inst:
        cards = db_inst.list_deck_cards(deck_id)
    if not cards:
        console.print("[yellow]No cards in this deck.[/yellow]")
        return
    table = Table(title="Cards")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Front", style="cyan")
    table.add_column("Back")
    table.add_column("Source")
    for card in cards:
        table.add_row(card.id, card.front, card.back, card.source_type)
    console.print(table)


# ---------------------------------------------------------------------------
# Queue commands
# ---------------------------------------------------------------------------


@app.command()
def due(
    user_id: str = typer.Argument(..., help="Studying user id."),  # noqa: B008
    deck_id: str = typer.Argument(..., help="Deck id."),  # noqa: B008
    limit: Optional[int] = _limit_option,
    db: Optional[Path] = _db_option,
):
    """Show today's queue: due cards first, then new cards."""
    with _open_db(db) as db_inst:
        queue = QueueBuilder(db_inst).build_queue(
            user_id,
            deck_id,
            limit=_clamp_limit(limit, settings.default_queue_limit),
        )
    if not queue.items:
        console.print("[green]Nothing due. All caught up![/green]")
        return
    _display_queue(console, f"Due queue ({len(queue.items)} cards)", queue.items)


@app.command()
def filtered(
    user_id: str = typer.Argument(..., help="Studying user id."),  # noqa: B008
    deck_id: str = typer.Argument(..., help="Deck id."),  # noqa: B008
    tag: Optional[str] = typer.Option(  # noqa: B008
        None, "--tag", "-t", help="Restrict to cards with this tag id."
    ),
    due_only: bool = typer.Option(
        False, "--due-only", help="Only include cards due now."
    ),
    limit: Optional[int] = _limit_option,
    db: Optional[Path] = _db_option,
):
    """Show an ad-hoc study queue without the new-card cap."""
    with _open_db(db) as db_inst:
        items = QueueBuilder(db_inst).build_filtered_queue(
            user_id,
            deck_id,
            tag_id=tag,
            due_only=due_only,
            limit=_clamp_limit(limit, settings.filtered_queue_limit),
        )
    if not items:
        console.print("[yellow]No matching cards.[/yellow]")
        return
    _display_queue(console, f"Filtered queue ({len(items)} cards)", items)


# ---------------------------------------------------------------------------
# Review command
# ---------------------------------------------------------------------------


@app.command()
def review(
    user_id: str = typer.Argument(..., help="Reviewing user id."),  # noqa: B008
    deck_id: str = typer.Argument(..., help="Deck id."),  # noqa: B008
    card_id: str = typer.Argument(..., help="Card id."),  # noqa: B008
    grade: int = typer.Argument(  # noqa: B008
        ..., help="0=Again, 1=Hard, 2=Good, 3=Easy (clamped)."
    ),
    confidence: Optional[int] = typer.Option(
        None, "--confidence", "-c", help="Self-reported confidence 0-3."
    ),
    db: Optional[Path] = _db_option,
):
    """Submit one review and show the card's next state."""
    with _open_db(db) as db_inst:
        processor = ReviewProcessor(db_inst)
        try:
            result = processor.submit_review(
                user_id,
                deck_id,
                card_id,
                grade,
                confidence=confidence,
            )
        except SuspendedCardError as e:
            console.print(f"[bold red]Conflict:[/bold red] {escape(str(e))}")
            raise typer.Exit(code=2) from e

    nxt = result.next
    console.print(
        f"Graded [bold]{result.grade.name}[/bold]. "
        f"State: [magenta]{nxt.state.value}[/magenta], "
        f"interval: {nxt.interval_days:g}d, ease: {nxt.ease:.2f}, "
        f"due: [yellow]{nxt.due_at.strftime('%Y-%m-%d %H:%M')}[/yellow]"
    )
    if result.suspended:
        console.print(
            "[bold red]Card suspended as a leech. "
            "Further reviews will be rejected.[/bold red]"
        )


# ---------------------------------------------------------------------------
# Sync & stats
# ---------------------------------------------------------------------------


@app.command()
def sync(
    user_id: str = typer.Argument(..., help="User id."),  # noqa: B008
    since: int = typer.Option(
        0, "--since", help="Cursor from a previous pull (epoch ms)."
    ),
    db: Optional[Path] = _db_option,
):
    """Print review events and card states changed after a cursor, as JSON."""
    with _open_db(db) as db_inst:
        page = db_inst.sync_pull(user_id, since=since)
    typer.echo(page.model_dump_json(indent=2))


@app.command()
def stats(
    user_id: str = typer.Argument(..., help="User id."),  # noqa: B008
    db: Optional[Path] = _db_option,
):
    """Display per-deck scheduling totals and recent reviews for a user."""
    with _open_db(db) as db_inst:
        stats_data = db_inst.get_review_analytics(user_id)

    if not stats_data["decks"]:
        console.print("[yellow]No decks found in the database.[/yellow]")
        return
    _display_deck_stats(console, stats_data)
    if stats_data["recent_reviews"]:
        _display_recent_reviews(console, stats_data)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """
    Run the CLI application.

    If an unexpected exception occurs, print a bold red error message to the console and exit the process with status code 1.
    """
    try:
        app()
    except Exception as e:
        console.print(f"[bold red]UNEXPECTED ERROR: {e}[/bold red]")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
