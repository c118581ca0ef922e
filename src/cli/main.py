"""
Typer CLI for the Mental Model Engine.

Commands:
    mme replay EVENTS.jsonl     - Feed a recorded event log through the engine
    mme weak-areas              - Show the weakest recently touched concepts
    mme proficiency NODE_ID     - Show the proficiency breakdown of one concept
    mme prune                   - Run a pruning sweep on a persisted profile
    mme audit                   - Show the pruning audit log
    mme config                  - Show the effective configuration

Usage:
    mme --help
    mme replay logs/session.jsonl --profile alice --save
    mme weak-areas --profile alice --days 7 --limit 10
    mme prune --profile alice --min-proficiency 10 --max-age-days 30
"""

from __future__ import annotations

import sys
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from config import get_settings
from src.adaptive.proficiency import ProficiencyCalculator, ProficiencyConfig, ProficiencyLevel
from src.adaptive.struggle_aggregator import AggregatorConfig, InterventionFrequency
from src.delivery.decision_outbox import CollectingInterface
from src.delivery.engine import EventTimeClock, MentalModelEngine
from src.delivery.ingestion import EventIngestor, SensitivePathFilter, read_event_log
from src.delivery.state_store import StateStore
from src.graph.errors import NotFoundError
from src.graph.maintenance import GraphMaintenance, PruningConfig
from src.graph.models import UserEvent, WeakArea, utcnow

app = typer.Typer(
    help="mme CLI: developer events -> knowledge graph -> blind spot decisions",
    no_args_is_help=True,
)

console = Console()


def _configure_logging(verbose: bool = False) -> None:
    settings = get_settings()
    logger.remove()
    logger.add(
        sys.stderr,
        level="DEBUG" if verbose else settings.log_level,
        format="<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {message}",
    )
    if settings.log_file:
        logger.add(settings.log_file, level=settings.log_level, rotation="10 MB", retention=5)


def _open_state(db: Path | None) -> StateStore:
    settings = get_settings()
    path = db or (Path(settings.state_db_path) if settings.state_db_path else None)
    return StateStore(path)


def _calculator() -> ProficiencyCalculator:
    return ProficiencyCalculator(ProficiencyConfig.from_settings(get_settings()))


def _weak_area_table(title: str, areas: list[WeakArea]) -> Table:
    table = Table(title=title)
    table.add_column("Concept", style="bold")
    table.add_column("Kind")
    table.add_column("Proficiency", justify="right")
    table.add_column("Level")
    table.add_column("Last interaction")
    for area in areas:
        level = ProficiencyLevel.from_score(area.proficiency)
        table.add_row(
            area.name,
            area.kind.value,
            f"{area.proficiency:.1f}",
            f"[{level.color}]{level.value}[/{level.color}]",
            area.last_interaction.strftime("%Y-%m-%d %H:%M") if area.last_interaction else "-",
        )
    return table


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    _configure_logging(verbose)


@app.command()
def replay(
    events_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON Lines event log"),
    profile: str = typer.Option("default", "--profile", "-p", help="User profile id"),
    frequency: InterventionFrequency | None = typer.Option(
        None, "--frequency", "-f", help="Override the intervention frequency setting"
    ),
    save: bool = typer.Option(False, "--save", help="Persist the resulting graph"),
    db: Path | None = typer.Option(None, "--db", help="State database path"),
    limit: int = typer.Option(10, "--limit", "-n", help="Weak areas to show"),
) -> None:
    """Replay a recorded event log through the engine."""
    settings = get_settings()
    state = _open_state(db)
    store = state.load_graph(
        profile,
        calculator=_calculator(),
        dedup_memory_size=settings.dedup_memory_size,
        default_complexity=settings.default_complexity_weight,
    )

    aggregator_config = AggregatorConfig.from_settings(settings)
    if frequency is not None:
        aggregator_config = AggregatorConfig(
            weights=aggregator_config.weights,
            base_threshold=aggregator_config.base_threshold,
            frequency=frequency,
            multipliers=aggregator_config.multipliers,
            repeat_margin=aggregator_config.repeat_margin,
            validity=aggregator_config.validity,
        )

    collector = CollectingInterface()
    engine = MentalModelEngine(
        profile,
        store=store,
        settings=settings,
        learning_interface=collector,
        clock=EventTimeClock(),
        aggregator_config=aggregator_config,
        asynchronous_delivery=False,
    )
    ingestor = EventIngestor(engine, SensitivePathFilter(settings.sensitive_path_patterns))

    # Feed batch-window sized slices of event time so detectors see the stream evolve
    window = engine.config.batch_window
    batch_start = None
    try:
        for record in read_event_log(events_file):
            try:
                event = UserEvent.from_dict(record)
            except (KeyError, TypeError, ValueError) as exc:
                ingestor.malformed += 1
                logger.warning("Skipping malformed event record: {}", exc)
                continue
            if batch_start is not None and event.timestamp - batch_start >= window:
                engine.process_pending()
                batch_start = None
            if ingestor.ingest(event) and batch_start is None:
                batch_start = event.timestamp
        engine.process_pending()

        if collector.decisions:
            table = Table(title="Interventions")
            table.add_column("Time")
            table.add_column("Concept", style="bold")
            table.add_column("Score", justify="right")
            table.add_column("Signals")
            for decision in collector.decisions:
                table.add_row(
                    decision.created_at.strftime("%H:%M:%S"),
                    decision.node_id,
                    f"{decision.score:.2f}",
                    ", ".join(s.value for s in decision.signal_types),
                )
            console.print(table)
        else:
            console.print("[dim]No interventions raised.[/dim]")

        console.print(_weak_area_table("Weak areas", engine.weak_areas(limit=limit)))

        metrics = engine.metrics_snapshot()
        console.print(
            f"[dim]{ingestor.accepted} events accepted, {ingestor.excluded} excluded, "
            f"{ingestor.malformed} malformed, {metrics['events_dropped']} dropped, "
            f"{metrics['nodes']} concepts tracked[/dim]"
        )

        if save:
            state.save_graph(engine.store)
            state.append_audit(profile, engine.audit_log())
            console.print(f"[green]Saved profile {profile} to {state.db_path}[/green]")
    finally:
        engine.close()
        state.close()


@app.command("weak-areas")
def weak_areas(
    profile: str = typer.Option("default", "--profile", "-p"),
    days: float | None = typer.Option(None, "--days", "-d", help="Only concepts touched within N days"),
    limit: int = typer.Option(10, "--limit", "-n"),
    db: Path | None = typer.Option(None, "--db"),
) -> None:
    """Show the weakest recently touched concepts of a persisted profile."""
    settings = get_settings()
    state = _open_state(db)
    try:
        store = state.load_graph(profile, calculator=_calculator())
        max_age = days if days is not None else settings.weak_area_max_age_days
        areas = store.query_weak_areas(max_age, limit, utcnow())
        if not areas:
            console.print(f"[dim]No concepts touched in the last {max_age:g} days.[/dim]")
            return
        console.print(_weak_area_table(f"Weak areas: {profile}", areas))
    finally:
        state.close()


@app.command()
def proficiency(
    node_id: str = typer.Argument(..., help="Concept identifier"),
    profile: str = typer.Option("default", "--profile", "-p"),
    db: Path | None = typer.Option(None, "--db"),
) -> None:
    """Show the proficiency breakdown for one concept."""
    state = _open_state(db)
    try:
        store = state.load_graph(profile, calculator=_calculator())
        try:
            node = store.get_node(node_id)
        except NotFoundError as exc:
            console.print(f"[red]{exc}[/red]")
            raise typer.Exit(1)

        breakdown = store.calculator.breakdown(node, utcnow())
        table = Table(title=f"{node.name} ({node.kind.value})")
        table.add_column("Term")
        table.add_column("Value", justify="right")
        for term, value in breakdown.to_dict().items():
            table.add_row(term, f"{value:g}")
        table.add_row("interactions", str(node.interaction_count))
        table.add_row("successes / failures", f"{node.success_count} / {node.failure_count}")
        table.add_row("dependencies", ", ".join(sorted(node.dependencies)) or "-")
        console.print(table)
    finally:
        state.close()


@app.command()
def prune(
    profile: str = typer.Option("default", "--profile", "-p"),
    min_proficiency: float | None = typer.Option(None, "--min-proficiency"),
    max_age_days: float | None = typer.Option(None, "--max-age-days"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be removed"),
    db: Path | None = typer.Option(None, "--db"),
) -> None:
    """Run a pruning sweep on a persisted profile."""
    settings = get_settings()
    defaults = PruningConfig.from_settings(settings)
    config = PruningConfig(
        min_proficiency=min_proficiency if min_proficiency is not None else defaults.min_proficiency,
        max_age_days=max_age_days if max_age_days is not None else defaults.max_age_days,
        interval=defaults.interval,
        audit_log_size=defaults.audit_log_size,
    )

    state = _open_state(db)
    try:
        store = state.load_graph(profile, calculator=_calculator())
        maintenance = GraphMaintenance(store, config)
        records = maintenance.preview(utcnow()) if dry_run else maintenance.sweep(utcnow())

        if not records:
            console.print("[dim]Nothing to prune.[/dim]")
            return

        table = Table(title=f"{'Would prune' if dry_run else 'Pruned'} ({len(records)})")
        table.add_column("Concept", style="bold")
        table.add_column("Proficiency", justify="right")
        table.add_column("Idle days", justify="right")
        for record in records:
            idle = record.days_since_interaction
            table.add_row(
                record.node_id,
                f"{record.final_proficiency:.1f}",
                f"{idle:.1f}" if idle is not None else "never",
            )
        console.print(table)

        if not dry_run:
            state.save_graph(store)
            state.append_audit(profile, records)
    finally:
        state.close()


@app.command()
def audit(
    profile: str = typer.Option("default", "--profile", "-p"),
    limit: int = typer.Option(20, "--limit", "-n"),
    db: Path | None = typer.Option(None, "--db"),
) -> None:
    """Show the pruning audit log of a profile."""
    state = _open_state(db)
    try:
        records = state.get_audit(profile, limit)
        if not records:
            console.print("[dim]No pruning recorded.[/dim]")
            return
        table = Table(title=f"Pruning audit: {profile}")
        table.add_column("Pruned at")
        table.add_column("Concept", style="bold")
        table.add_column("Kind")
        table.add_column("Final proficiency", justify="right")
        for record in records:
            table.add_row(
                record.pruned_at.strftime("%Y-%m-%d %H:%M"),
                record.node_id,
                record.kind.value,
                f"{record.final_proficiency:.1f}",
            )
        console.print(table)
    finally:
        state.close()


@app.command("config")
def show_config() -> None:
    """Show the effective configuration."""
    settings = get_settings()
    table = Table(title="Effective configuration")
    table.add_column("Setting")
    table.add_column("Value")
    for name, value in settings.model_dump().items():
        table.add_row(name, str(value))
    console.print(table)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
