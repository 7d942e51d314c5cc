"""CLI entry point for SpeakerSift."""

import json
import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from speakersift.alerts.engine import AlertEngine
from speakersift.config import load_config, save_config
from speakersift.errors import SpeakerSiftError
from speakersift.history.filters import SORT_FIELDS, HistoryFilters
from speakersift.history.ledger import HistoryLedger
from speakersift.profiles.comparator import filter_candidates
from speakersift.profiles.merge import resolve_all
from speakersift.profiles.service import MergeService
from speakersift.storage.database import Database
from speakersift.storage.export import export_history_csv, export_history_json
from speakersift.storage.models import MergeConflict, SpeakerActivity, VoiceSignature
from speakersift.storage.repository import ProfileStore, profile_from_dict, request_from_dict
from speakersift.workflow.identification import IDENTIFY, IdentificationWorkflow

console = Console(force_terminal=True)


def _open_store(ctx) -> tuple[Database, ProfileStore]:
    db = Database(ctx.obj["db_path"])
    return db, ProfileStore(db, ctx.obj["config"].thresholds)


def _fail(e: Exception):
    console.print(f"[red]Error:[/red] {e}")
    sys.exit(1)


def _load_json_list(path: str) -> list[dict]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = [data]
    return data


@click.group()
@click.option(
    "--config", "config_path",
    default=None,
    help="Path to speakersift.json",
    type=click.Path(),
)
@click.option(
    "--db",
    default=None,
    help="Database path (overrides config)",
    type=click.Path(),
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, config_path, db, verbose):
    """SpeakerSift - Identify unknown meeting speakers and merge duplicate voices."""
    ctx.ensure_object(dict)

    try:
        config = load_config(Path(config_path) if config_path else None)
    except (ValueError, TypeError) as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        sys.exit(1)
    if db:
        config.db_path = Path(db)
    ctx.obj["config"] = config
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["db_path"] = config.db_path

    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING, format="%(message)s")


@cli.command()
@click.pass_context
def init(ctx):
    """Create the database and write a default config if none exists."""
    config = ctx.obj["config"]
    config_path = ctx.obj["config_path"]
    try:
        db, _ = _open_store(ctx)
        db.initialize()
        db.close()
    except SpeakerSiftError as e:
        _fail(e)
    console.print(f"[green]Database ready:[/green] {ctx.obj['db_path']}")

    if config_path is not None and not config_path.exists():
        save_config(config, config_path)
        console.print(f"[green]Wrote config:[/green] {config_path}")


# ---------------------------------------------------------------------------
# Profiles and requests
# ---------------------------------------------------------------------------


@cli.group(name="profiles")
def profiles_group():
    """Inspect and import voice profiles."""
    pass


@profiles_group.command(name="list")
@click.option("--unconfirmed", is_flag=True, help="Only show unconfirmed voices")
@click.pass_context
def profiles_list(ctx, unconfirmed):
    """List active voice profiles."""
    db, store = _open_store(ctx)
    with db:
        profiles = store.list_profiles(confirmed=False if unconfirmed else None)

    if not profiles:
        console.print("[yellow]No profiles found.[/yellow]")
        return

    table = Table(title="Voice Profiles")
    table.add_column("Voice", style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("User")
    table.add_column("Confirmed", justify="center")
    table.add_column("Confidence", justify="right")
    table.add_column("Meetings", justify="right")
    table.add_column("Speaking (s)", justify="right")

    for p in profiles:
        table.add_row(
            p.voice_id,
            p.display_name or "[dim]unknown[/dim]",
            p.user_id or "",
            "[green]✓[/green]" if p.confirmed else "",
            f"{p.confidence:.0%}",
            str(p.meetings_count),
            f"{p.total_speaking_time:.0f}",
        )
    console.print(table)


@profiles_group.command(name="import")
@click.argument("file", type=click.Path(exists=True))
@click.pass_context
def profiles_import(ctx, file):
    """Import voice profiles from a JSON file."""
    try:
        items = _load_json_list(file)
        profiles = [profile_from_dict(item) for item in items]
    except (ValueError, KeyError, TypeError) as e:
        _fail(e)

    db, store = _open_store(ctx)
    with db:
        try:
            for profile in profiles:
                store.save_profile(profile)
        except SpeakerSiftError as e:
            _fail(e)
    console.print(f"[green]Imported[/green] {len(profiles)} profile(s).")


@cli.group(name="requests")
def requests_group():
    """Manage pending identification requests."""
    pass


@requests_group.command(name="list")
@click.option("--meeting", default=None, help="Only requests from this meeting id")
@click.option("--limit", type=int, default=10, help="Max requests to show")
@click.pass_context
def requests_list(ctx, meeting, limit):
    """List pending identification requests."""
    db, store = _open_store(ctx)
    with db:
        requests = store.get_pending_requests(meeting, limit)

    if not requests:
        console.print("[yellow]No pending requests.[/yellow]")
        return

    table = Table(title="Pending Identification Requests")
    table.add_column("ID", style="cyan")
    table.add_column("Speaker", style="bold")
    table.add_column("Meeting")
    table.add_column("Date")
    table.add_column("Voice")
    for r in requests:
        table.add_row(
            r.id,
            r.speaker_label,
            r.meeting_title,
            r.meeting_date.strftime("%Y-%m-%d"),
            r.voice_id,
        )
    console.print(table)


@requests_group.command(name="add")
@click.argument("file", type=click.Path(exists=True))
@click.pass_context
def requests_add(ctx, file):
    """Queue identification requests from a JSON file."""
    try:
        requests = [request_from_dict(item) for item in _load_json_list(file)]
    except (ValueError, KeyError, TypeError) as e:
        _fail(e)

    db, store = _open_store(ctx)
    with db:
        try:
            for request in requests:
                store.get_or_create_profile(request.voice_id, request.meeting_date)
                store.create_request(request)
        except SpeakerSiftError as e:
            _fail(e)
    console.print(f"[green]Queued[/green] {len(requests)} request(s).")


# ---------------------------------------------------------------------------
# Duplicates and merging
# ---------------------------------------------------------------------------


@cli.group(name="duplicates")
def duplicates_group():
    """Find duplicate voice profiles."""
    pass


@duplicates_group.command(name="scan")
@click.option(
    "--tier",
    type=click.Choice(["all", "high", "medium", "low"]),
    default="all",
    help="Only show candidates with this confidence",
)
@click.option("--auto-only", is_flag=True, help="Only show auto-mergeable candidates")
@click.option("--search", "-s", default="", help="Filter by name or voice id")
@click.pass_context
def duplicates_scan(ctx, tier, auto_only, search):
    """Score every pair of active profiles and list likely duplicates."""
    db, store = _open_store(ctx)
    with db:
        service = MergeService(store, HistoryLedger.load(store))
        candidates = filter_candidates(service.scan(), search, tier, auto_only)

    if not candidates:
        console.print("[yellow]No duplicate candidates found.[/yellow]")
        return

    table = Table(title=f"Duplicate Candidates ({len(candidates)})")
    table.add_column("Primary", style="cyan")
    table.add_column("Secondary", style="cyan")
    table.add_column("Score", justify="right")
    table.add_column("Tier")
    table.add_column("Conflicts", justify="right")
    table.add_column("Auto", justify="center")
    table.add_column("Reasons")

    tier_styles = {"high": "green", "medium": "yellow", "low": "red"}
    for c in candidates:
        primary, secondary = c.profiles[0], c.profiles[1]
        style = tier_styles.get(c.confidence, "white")
        table.add_row(
            f"{primary.voice_id} ({primary.display_name or '?'})",
            f"{secondary.voice_id} ({secondary.display_name or '?'})",
            f"{c.similarity_score:.0%}",
            f"[{style}]{c.confidence}[/{style}]",
            str(c.conflict_count),
            "[green]✓[/green]" if c.auto_mergeable else "",
            "; ".join(c.reasons),
        )
    console.print(table)


@cli.command()
@click.argument("primary")
@click.argument("secondary")
@click.option(
    "--keep",
    type=click.Choice(["primary", "secondary"]),
    default=None,
    help="Resolve every conflict with this side",
)
@click.option(
    "--set", "overrides",
    multiple=True,
    help="Custom value for a conflicting field, as FIELD=VALUE",
)
@click.pass_context
def merge(ctx, primary, secondary, keep, overrides):
    """Merge SECONDARY into PRIMARY."""
    db, store = _open_store(ctx)
    with db:
        service = MergeService(store, HistoryLedger.load(store))
        try:
            candidate = service.candidate_for(primary, secondary)
            conflicts = candidate.conflicts
            if keep:
                conflicts = resolve_all(conflicts, keep)
            elif candidate.conflicts:
                conflicts = [
                    MergeConflict(c.field, c.primary_value, c.secondary_value, None)
                    for c in candidate.conflicts
                ]

            for item in overrides:
                field_name, sep, value = item.partition("=")
                if not sep:
                    raise click.BadParameter(f"Expected FIELD=VALUE, got {item}", param_hint="--set")
                matched = [c for c in conflicts if c.field == field_name]
                if not matched:
                    raise click.BadParameter(f"No conflict on field {field_name}", param_hint="--set")
                matched[0].resolution = "custom"
                matched[0].custom_value = value

            outcome = service.merge(candidate, conflicts)
        except SpeakerSiftError as e:
            _fail(e)

    p = outcome.profile
    console.print(
        f"[green]Merged[/green] {secondary} into {p.voice_id} "
        f"as [bold]{p.display_name or 'unknown'}[/bold]"
    )
    console.print(f"  History entry: [cyan]{outcome.entry.id}[/cyan]")


@cli.command(name="auto-merge")
@click.pass_context
def auto_merge(ctx):
    """Merge every high-scoring duplicate pair that has no conflicts."""
    db, store = _open_store(ctx)
    with db:
        service = MergeService(store, HistoryLedger.load(store))
        try:
            outcomes = service.auto_merge(service.scan())
        except SpeakerSiftError as e:
            _fail(e)

    if not outcomes:
        console.print("[yellow]Nothing to auto-merge.[/yellow]")
        return
    for o in outcomes:
        primary_id, secondary_id = o.entry.source_profile_ids
        console.print(f"  [green]Merged[/green] {secondary_id} into {primary_id}")
    console.print(f"[green]Done![/green] Auto-merged {len(outcomes)} pair(s).")


# ---------------------------------------------------------------------------
# Identification
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("request_id")
@click.option("--name", default=None, help="Identify as a new person with this name")
@click.option("--suggested", is_flag=True, help="Accept the top suggestion")
@click.option("--profile", "profile_id", default=None, help="Identify as an existing voice profile")
@click.option("--confidence", type=float, default=None, help="Confidence for manual or matched identification")
@click.option("--skip", is_flag=True, help="Skip this speaker")
@click.option("--defer", is_flag=True, help="Decide later")
@click.pass_context
def identify(ctx, request_id, name, suggested, profile_id, confidence, skip, defer):
    """Resolve one identification request."""
    chosen = [bool(name is not None), suggested, bool(profile_id), skip, defer]
    if sum(chosen) != 1:
        raise click.UsageError("Choose exactly one of --name, --suggested, --profile, --skip, --defer")

    config = ctx.obj["config"]
    db, store = _open_store(ctx)
    with db:
        request = store.get_request(request_id)
        if request is None:
            _fail(f"No identification request {request_id}")
        if request.status != "pending":
            console.print(f"[yellow]Request {request_id} is already {request.status}.[/yellow]")
            return

        ledger = HistoryLedger.load(store)
        workflow = IdentificationWorkflow(
            [request], store, ledger, config.show_voice_comparison, config.thresholds
        )
        while workflow.current_step.id != IDENTIFY.id:
            workflow.next_step()

        try:
            if skip:
                result = workflow.skip()
            elif defer:
                result = workflow.defer()
            else:
                if name is not None:
                    workflow.set_manual_name(name)
                elif suggested:
                    current = workflow.current
                    if not current.suggestions:
                        _fail("No suggestions available for this speaker")
                    workflow.select_suggestion(current.suggestions[0])
                else:
                    profile = store.get_profile(profile_id)
                    if profile is None:
                        _fail(f"No voice profile {profile_id}")
                    workflow.select_profile(profile)
                if confidence is not None and not suggested:
                    workflow.set_confidence(confidence)
                workflow.next_step()
                result = workflow.submit()
        except SpeakerSiftError as e:
            _fail(e)

    if result.action == "identified":
        console.print(
            f"[green]Identified[/green] {request.speaker_label} as "
            f"[bold]{result.user_name}[/bold] ({result.method}, {result.confidence:.0%})"
        )
    else:
        console.print(f"[yellow]{result.action.capitalize()}[/yellow] {request.speaker_label}")


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@cli.group(name="history")
def history_group():
    """Review, undo and export past decisions."""
    pass


@history_group.command(name="show")
@click.option("--search", "-s", default="", help="Match speaker, meeting or user")
@click.option(
    "--action",
    type=click.Choice(["all", "identified", "skipped", "deferred", "undone", "merged"]),
    default="all",
)
@click.option(
    "--method",
    type=click.Choice(["all", "manual", "suggested", "matched"]),
    default="all",
)
@click.option("--min-confidence", type=float, default=0.0)
@click.option("--sort", "sort_field", type=click.Choice(list(SORT_FIELDS)), default="timestamp")
@click.option("--asc", is_flag=True, help="Oldest / lowest first")
@click.option("--limit", type=int, default=50)
@click.pass_context
def history_show(ctx, search, action, method, min_confidence, sort_field, asc, limit):
    """Show identification and merge history."""
    db, store = _open_store(ctx)
    with db:
        ledger = HistoryLedger.load(store)
    filters = HistoryFilters(
        search=search, action=action, method=method, min_confidence=min_confidence
    )
    entries = ledger.query(filters, sort_field, descending=not asc)[:limit]

    if not entries:
        console.print("[yellow]No history entries.[/yellow]")
        return

    table = Table(title="History")
    table.add_column("ID", style="dim")
    table.add_column("When")
    table.add_column("Action", style="bold")
    table.add_column("Speaker", style="cyan")
    table.add_column("Meeting")
    table.add_column("User")
    table.add_column("Method")
    table.add_column("Conf.", justify="right")
    table.add_column("Undo", justify="center")

    for e in entries:
        table.add_row(
            e.id,
            e.timestamp.strftime("%Y-%m-%d %H:%M"),
            e.action,
            e.speaker_label,
            e.meeting_title,
            e.user_name or "",
            e.method or "",
            f"{e.confidence:.0%}",
            "✓" if e.undoable else "",
        )
    console.print(table)


@history_group.command(name="stats")
@click.pass_context
def history_stats(ctx):
    """Summarise identification history."""
    db, store = _open_store(ctx)
    with db:
        stats = HistoryLedger.load(store).stats()

    console.print()
    console.print("[bold]Identification Stats[/bold]")
    console.print(f"  Total decisions: {stats.total_entries}")
    console.print(f"  Identified: [green]{stats.identified_count}[/green]")
    console.print(f"  Skipped: {stats.skipped_count}")
    console.print(f"  Deferred: {stats.deferred_count}")
    console.print(f"  Undone: {stats.undone_count}")
    console.print(f"  Average confidence: {stats.average_confidence:.0%}")
    console.print(f"  Accuracy trend: {stats.accuracy_trend:+.0%}")

    table = Table(title="Methods")
    table.add_column("Method", style="cyan")
    table.add_column("Count", justify="right")
    for m, count in stats.method_breakdown.items():
        table.add_row(m, str(count))
    console.print(table)

    daily = Table(title="Last 7 Days")
    daily.add_column("Day")
    daily.add_column("Decisions", justify="right")
    daily.add_column("Accuracy", justify="right")
    for d in stats.daily_activity:
        daily.add_row(d.day.isoformat(), str(d.count), f"{d.accuracy:.0%}")
    console.print(daily)


@history_group.command(name="undo")
@click.argument("entry_id")
@click.pass_context
def history_undo(ctx, entry_id):
    """Undo an identification or merge."""
    db, store = _open_store(ctx)
    with db:
        service = MergeService(store, HistoryLedger.load(store))
        try:
            undone = service.undo(entry_id)
        except SpeakerSiftError as e:
            _fail(e)

    if undone is None:
        console.print(f"[yellow]Nothing to undo for {entry_id}.[/yellow]")
        return
    console.print(f"[green]Undid[/green] {undone.action} entry {undone.id}")


@history_group.command(name="redo")
@click.pass_context
def history_redo(ctx):
    """Redo the most recent undo."""
    db, store = _open_store(ctx)
    with db:
        service = MergeService(store, HistoryLedger.load(store))
        try:
            restored = service.redo()
        except SpeakerSiftError as e:
            _fail(e)

    if restored is None:
        console.print("[yellow]Nothing to redo.[/yellow]")
        return
    console.print(f"[green]Redid[/green] {restored.action} entry {restored.id}")


@history_group.command(name="export")
@click.option("--format", "fmt", type=click.Choice(["csv", "json"]), default="csv")
@click.option("--output", "-o", default=None, type=click.Path(), help="Output file")
@click.pass_context
def history_export(ctx, fmt, output):
    """Export history as CSV or JSON."""
    db, store = _open_store(ctx)
    with db:
        entries = HistoryLedger.load(store).entries

    if output:
        path = Path(output)
    else:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        path = ctx.obj["config"].exports_dir / f"history_{stamp}.{fmt}"

    writer = export_history_csv if fmt == "csv" else export_history_json
    count = writer(entries, path)
    console.print(f"[green]Exported[/green] {count} entries to [bold]{path}[/bold]")


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


@cli.group(name="alerts")
def alerts_group():
    """Simulate unknown-speaker alerts."""
    pass


def _activity_from_event(event: dict, at: datetime) -> SpeakerActivity:
    return SpeakerActivity(
        speaker_id=event["speaker_id"],
        voice_id=event.get("voice_id", event["speaker_id"]),
        confidence=event.get("confidence", 0.0),
        speaking_duration=event.get("speaking_duration", 0.0),
        last_speak_time=at,
        volume=event.get("volume", 0.0),
        is_identified=event.get("is_identified", False),
        signature=VoiceSignature(event.get("pitch", "medium"), event.get("pace", "normal")),
        context_clues=tuple(event.get("context_clues", [])),
    )


@alerts_group.command(name="replay")
@click.argument("events_file", type=click.Path(exists=True))
@click.pass_context
def alerts_replay(ctx, events_file):
    """Feed a timed list of events through the alert engine.

    Each event has ``at`` (milliseconds from start) and ``type``: activity,
    tick, dismiss, defer or identify.
    """
    config = ctx.obj["config"]
    engine = AlertEngine(config.alerts)
    start = datetime.now().replace(microsecond=0)

    try:
        events = sorted(_load_json_list(events_file), key=lambda e: e.get("at", 0))
    except (ValueError, TypeError) as e:
        _fail(e)

    for event in events:
        now = start + timedelta(milliseconds=event.get("at", 0))
        kind = event.get("type", "activity")
        if kind == "activity":
            engine.ingest(_activity_from_event(event, now), now)
        elif kind == "tick":
            engine.tick(now)
        elif kind == "dismiss":
            engine.dismiss(event["key"], event.get("duration", 0), now)
        elif kind == "defer":
            engine.defer(event["key"], event.get("minutes", 5), now)
        elif kind == "identify":
            engine.identify(event["speaker_id"], now)
        else:
            _fail(f"Unknown event type: {kind}")

        visible = engine.visible_alerts()
        shown = ", ".join(
            f"{b.key}[{len(b.members)}]" for b in visible
        ) or "[dim]none[/dim]"
        console.print(f"{event.get('at', 0):>8}ms  {kind:<9} visible: {shown}")

    console.print(f"[green]Done![/green] {len(engine.visible_alerts())} alert(s) visible.")
