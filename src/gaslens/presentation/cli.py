import asyncio, contextlib, json, logging, signal, time
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import (
    Progress, BarColumn, TextColumn, TimeElapsedColumn, MofNCompleteColumn, SpinnerColumn
)

from ..adapters.local_task import LocalTask
from ..application.use_cases import (
    collect_events, export_report, open_run, open_store, store_summary, validate as run_checks,
)
from ..core.config import Settings, load_settings
from ..domain.errors import ConfigurationError, GaslensError
from ..domain.models import CollectionProgress

app = typer.Typer(help="gaslens: resumable ERC-20 transfer collector with gas-cost metrics.")
console = Console()
logger = logging.getLogger("gaslens")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _settings(**overrides) -> Settings:
    load_dotenv()
    try:
        s = load_settings(**overrides)
    except ConfigurationError as e:
        console.print(f"[red]configuration error[/]: {e}")
        raise typer.Exit(code=2)
    _configure_logging(s.log_level)
    return s


@app.command()
def collect(
    rpc_url: Optional[str] = typer.Option(None, help="RPC endpoint URL (ETH_RPC_URL)"),
    target: Optional[str] = typer.Option(None, help="Target address (TARGET_ADDRESS)"),
    contract: Optional[str] = typer.Option(None, help="ERC-20 contract (TOKEN_CONTRACT)"),
    min_events: Optional[int] = typer.Option(None, help="Stop once this many events are stored (MIN_EVENTS)"),
    batch_size: Optional[int] = typer.Option(None, help="Blocks per batch (BLOCK_BATCH_SIZE)"),
    batch_delay_ms: Optional[int] = typer.Option(None, help="Pause between batches (BATCH_DELAY_MS)"),
    adaptive: Optional[bool] = typer.Option(None, "--adaptive/--no-adaptive",
                                            help="Halve the batch when the provider rejects a range"),
    data_dir: Optional[Path] = typer.Option(None, help="Store, manifests and checkpoint root (DATA_DIR)"),
    log_level: Optional[str] = typer.Option(None, help="Logging level (LOG_LEVEL)"),
):
    """Scan block ranges from the resume point to the chain head and store enriched transfers."""
    s = _settings(rpc_url=rpc_url, target_address=target, contract_address=contract,
                  target_events=min_events, batch_size=batch_size, batch_delay_ms=batch_delay_ms,
                  adaptive_shrink=adaptive, data_dir=data_dir, log_level=log_level)
    console.print(_collection_panel(_run_collection(s)))


def _run_collection(s: Settings) -> CollectionProgress:
    progress_bar = Progress(SpinnerColumn(),
                            TextColumn("[bold]collecting[/]"),
                            BarColumn(),
                            MofNCompleteColumn(),
                            TextColumn("•"),
                            TimeElapsedColumn(),
                            TextColumn(" • {task.description}"),
                            console=console,
                            expand=True,
                            )
    bar = progress_bar.add_task(description="resuming", total=s.target_events)

    def on_progress(p: CollectionProgress) -> None:
        progress_bar.update(bar, completed=min(p.events_collected, p.target_events),
                            description=f"{p.state} block {p.current_block:,}/{p.chain_head:,} seg {p.segments}")

    async def main() -> CollectionProgress:
        task = open_run(s, on_progress=on_progress)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, task.request_stop)
        with progress_bar:
            return await collect_events(s, task)

    try:
        result = asyncio.run(main())
    except GaslensError as e:
        logger.error("collection failed: %s", e)
        raise typer.Exit(code=1)
    except Exception:
        logger.exception("collection failed")
        raise typer.Exit(code=1)

    return result


def _collection_panel(result: CollectionProgress) -> Panel:
    return Panel.fit(
        f"state={result.state}  complete={result.is_complete}\n"
        f"events={result.events_collected}/{result.target_events}  "
        f"blocks={result.blocks_processed:,}  next_block={result.current_block:,}  head={result.chain_head:,}",
        title="collection",
    )


@app.command()
def report(
    out: Path = typer.Option(Path("output/analysis_report.json"), help="Report JSON path"),
    data_dir: Optional[Path] = typer.Option(None, help="Store root (DATA_DIR)"),
):
    """Export daily gas cost, 7-day MA gas price and cumulative cost as JSON."""
    s = _settings(data_dir=data_dir)
    try:
        res = asyncio.run(export_report(s, str(out)))
    except GaslensError as e:
        logger.error("report failed: %s", e)
        raise typer.Exit(code=1)
    console.print(f"[bold]report[/]: {res['summary']['events_collected']} events → {out}")


@app.command()
def pipeline(
    out: Path = typer.Option(Path("output/analysis_report.json"), help="Report JSON path"),
    min_events: Optional[int] = typer.Option(None, help="Stop once this many events are stored (MIN_EVENTS)"),
    batch_size: Optional[int] = typer.Option(None, help="Blocks per batch (BLOCK_BATCH_SIZE)"),
    data_dir: Optional[Path] = typer.Option(None, help="Store, manifests and checkpoint root (DATA_DIR)"),
):
    """Collect, then export the report, in one run."""
    s = _settings(target_events=min_events, batch_size=batch_size, data_dir=data_dir)
    t0 = time.monotonic()
    result = _run_collection(s)
    console.print(_collection_panel(result))
    try:
        res = asyncio.run(export_report(s, str(out)))
    except GaslensError as e:
        logger.error("report failed: %s", e)
        raise typer.Exit(code=1)

    summary = res["summary"]
    first_block, last_block = summary["blocks_scanned"]
    start, end = summary["period_utc"]
    console.print(Panel.fit(
        f"events={summary['events_collected']}  blocks={first_block}-{last_block}\n"
        f"period={start} to {end}  duration={time.monotonic() - t0:.1f}s\n"
        f"report={out}",
        title="pipeline",
    ))


@app.command()
def validate():
    """Check configuration, RPC reachability and the event store."""
    s = _settings()
    results = asyncio.run(run_checks(s))
    failed = False
    for r in results:
        mark = "[green]ok[/]" if r.status == "ok" else "[red]error[/]"
        console.print(f"{mark} {r.component}: {r.message}")
        for k, v in r.details.items():
            console.print(f"    {k}: {v}")
        failed = failed or r.status == "error"
    if failed:
        raise typer.Exit(code=1)


@app.command()
def status(data_dir: Optional[Path] = typer.Option(None, help="Store root (DATA_DIR)")):
    """Print what the store holds and the last checkpoint."""
    s = _settings(data_dir=data_dir)
    summary = asyncio.run(store_summary(open_store(s)))
    summary["checkpoint"] = LocalTask(str(s.checkpoint_path)).load_checkpoint()
    typer.echo(json.dumps(summary, indent=2))


@app.command()
def compact(data_dir: Optional[Path] = typer.Option(None, help="Store root (DATA_DIR)")):
    """Merge the store's parquet parts into one."""
    s = _settings(data_dir=data_dir)
    removed = asyncio.run(open_store(s).compact())
    typer.echo(f"merged {removed} parts")


if __name__ == "__main__":
    app()
