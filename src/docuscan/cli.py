#!/usr/bin/env python3
"""
Command line entry point for DocuScan.

    docuscan compress letter.heic -o letter.jpeg
    docuscan ingest letter.jpeg --language uk --wait
    docuscan list
    docuscan watch <scan-id>
    docuscan delete <scan-id>
    docuscan reply <scan-id> --template uitstel
"""

import argparse
import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional

from rich.console import Console
from rich.table import Table

from .api.backend import BackendClient
from .api.records import ScanRecordStore
from .api.storage import UploadClient
from .core.analysis import (
    TEMPLATE_LABELS,
    ParsedAnalysis,
    calendar_url,
    display_status,
    parse_analysis,
)
from .core.errors import DocuScanError, ScanNotFound
from .core.image_encoder import ImageCompressor
from .core.models import LANGUAGES, Scan, SessionContext, language_label
from .core.orchestrator import ScanIngestionOrchestrator
from .core.synchronizer import AnalysisSynchronizer
from .utils.config import Settings, load_settings
from .utils.log_utils import configure_logging, get_logger

logger = get_logger(__name__)
console = Console()


@dataclass
class Pipeline:
    store: ScanRecordStore
    synchronizer: AnalysisSynchronizer
    orchestrator: ScanIngestionOrchestrator
    backend: BackendClient


@asynccontextmanager
async def open_pipeline(settings: Settings, session: SessionContext) -> AsyncIterator[Pipeline]:
    """Wire the Supabase adapters into a running pipeline and tear it down afterwards."""
    from .api.supabase_backend import SupabaseObjectStore, SupabaseScanDatabase, connect

    settings.require_supabase()
    client = await connect(settings.supabase_url, settings.supabase_key)
    store = ScanRecordStore(SupabaseScanDatabase(client, settings.table))
    synchronizer = AnalysisSynchronizer(
        store,
        session,
        poll_interval=settings.poll_interval,
        poll_timeout=settings.poll_timeout,
    )
    backend = BackendClient(
        settings.backend_url,
        timeout=settings.backend_timeout,
        webhook_url=settings.reply_webhook_url,
        webhook_token=settings.reply_webhook_token,
    )
    orchestrator = ScanIngestionOrchestrator(
        ImageCompressor(max_width=settings.max_width),
        UploadClient(SupabaseObjectStore(client, settings.bucket), timeout=settings.upload_timeout),
        store,
        synchronizer,
        notify=backend.notify_scan_created,
        free_scan_limit=settings.free_scan_limit,
        target_bytes=settings.target_bytes,
        upload_attempts=settings.upload_attempts,
    )
    await synchronizer.start()
    try:
        yield Pipeline(store, synchronizer, orchestrator, backend)
    finally:
        await orchestrator.drain()
        await synchronizer.stop()
        await backend.close()


def render_scans(scans) -> Table:
    table = Table(title="Scans")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Created")
    table.add_column("Language")
    table.add_column("Status")
    for scan in scans:
        table.add_row(
            scan.id,
            scan.created_at.strftime("%d.%m.%Y %H:%M"),
            language_label(scan.language),
            display_status(scan),
        )
    return table


def render_analysis(scan: Scan, parsed: ParsedAnalysis) -> Table:
    table = Table(title=f"Analysis for {scan.id}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Sender", parsed.sender or "-")
    table.add_row("Type", parsed.type or "-")
    table.add_row("Summary", parsed.summary or "-")
    table.add_row("Deadline", parsed.deadline or "-")
    table.add_row("Amount", f"€{parsed.amount:.2f}" if parsed.amount is not None else "-")
    table.add_row("Urgency", parsed.urgency)
    if parsed.deadline:
        table.add_row("Calendar", calendar_url(parsed.sender or "", parsed.deadline, parsed.summary))
    for index, step in enumerate(parsed.steps, 1):
        table.add_row(f"Step {index}", step)
    for template in parsed.templates:
        table.add_row("Reply", f"{template} ({TEMPLATE_LABELS.get(template, template)})")
    return table


def show_scan(scan: Scan) -> None:
    parsed = parse_analysis(scan.analysis, scan.id)
    if parsed is None:
        console.print(f"[yellow]Scan {scan.id}: {display_status(scan)}[/yellow]")
    else:
        console.print(render_analysis(scan, parsed))


async def wait_and_show(pipeline: Pipeline, scan_id: str, timeout: Optional[float]) -> int:
    try:
        pipeline.synchronizer.select(scan_id)
    except KeyError:
        console.print(f"[red]Scan {scan_id} not found[/red]")
        return 1
    with console.status(f"Waiting for analysis of {scan_id}..."):
        try:
            scan = await pipeline.synchronizer.wait_for_analysis(scan_id, timeout)
        except asyncio.TimeoutError:
            console.print(f"[yellow]Scan {scan_id}: still analyzing after {timeout}s[/yellow]")
            return 2
        except ScanNotFound:
            console.print(f"[red]Scan {scan_id} was deleted[/red]")
            return 1
    show_scan(scan)
    return 0


async def cmd_ingest(args, settings: Settings, session: SessionContext) -> int:
    async with open_pipeline(settings, session) as pipeline:
        pipeline.orchestrator.on_stage = lambda stage: logger.info("Stage: %s", stage)
        result = await pipeline.orchestrator.ingest(Path(args.image), session)
        if not result.ok:
            console.print(f"[red]Ingestion failed at {result.stage}: {result.message}[/red]")
            return 1
        console.print(f"[green]Scan {result.scan.id} saved[/green] ({result.image_url})")
        if args.wait:
            return await wait_and_show(pipeline, result.scan.id, args.timeout)
    return 0


async def cmd_list(args, settings: Settings, session: SessionContext) -> int:
    async with open_pipeline(settings, session) as pipeline:
        console.print(render_scans(pipeline.synchronizer.scans))
    return 0


async def cmd_watch(args, settings: Settings, session: SessionContext) -> int:
    async with open_pipeline(settings, session) as pipeline:
        return await wait_and_show(pipeline, args.scan_id, args.timeout)


async def cmd_delete(args, settings: Settings, session: SessionContext) -> int:
    async with open_pipeline(settings, session) as pipeline:
        await pipeline.synchronizer.delete_scan(args.scan_id)
        console.print(f"Deleted scan {args.scan_id}")
    return 0


async def cmd_reply(args, settings: Settings, session: SessionContext) -> int:
    async with open_pipeline(settings, session) as pipeline:
        scan = await pipeline.store.get_scan(args.scan_id)
        parsed = parse_analysis(scan.analysis, scan.id)
        if parsed is None:
            console.print(f"[yellow]Scan {scan.id}: {display_status(scan)}[/yellow]")
            return 2
        if args.template:
            text = await pipeline.backend.request_reply_template(args.template, parsed)
        else:
            text = await pipeline.backend.generate_response_letter(scan.id, parsed)
        console.print(text)
    return 0


def cmd_compress(args) -> int:
    result = ImageCompressor(max_width=args.max_width).compress(args.image, args.target_bytes)
    Path(args.output).write_bytes(result.data)
    console.print(
        f"Wrote {args.output}: {result.width}x{result.height}, q={result.quality}, "
        f"~{result.estimated_size} bytes"
        + ("" if result.within_target else " [yellow](above target)[/yellow]")
    )
    return 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Scan official letters and wait for their analysis")
    parser.add_argument("--env-file", help="dotenv file to load before reading settings")
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        default="warning",
        help="Set logging level (default: warning)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    compress = sub.add_parser("compress", help="Compress an image locally")
    compress.add_argument("image")
    compress.add_argument("-o", "--output", required=True)
    compress.add_argument("--target-bytes", type=int, default=1024 * 1024)
    compress.add_argument("--max-width", type=int, default=1200)

    ingest = sub.add_parser("ingest", help="Compress, upload and store a letter image")
    ingest.add_argument("image")
    ingest.add_argument("--language", choices=sorted(LANGUAGES), help="Language for the analysis")
    ingest.add_argument("--wait", action="store_true", help="Wait for the analysis to arrive")
    ingest.add_argument("--timeout", type=float, default=None)

    sub.add_parser("list", help="List your scans")

    watch = sub.add_parser("watch", help="Wait for a scan's analysis")
    watch.add_argument("scan_id")
    watch.add_argument("--timeout", type=float, default=None)

    delete = sub.add_parser("delete", help="Delete a scan")
    delete.add_argument("scan_id")

    reply = sub.add_parser("reply", help="Draft a reply letter for an analyzed scan")
    reply.add_argument("scan_id")
    reply.add_argument("--template", choices=sorted(TEMPLATE_LABELS))

    return parser.parse_args(argv)


COMMANDS = {
    "ingest": cmd_ingest,
    "list": cmd_list,
    "watch": cmd_watch,
    "delete": cmd_delete,
    "reply": cmd_reply,
}


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging(getattr(logging, args.log_level.upper()), console=console)

    try:
        if args.command == "compress":
            return cmd_compress(args)
        settings = load_settings(args.env_file)
        session = SessionContext(
            owner_id=settings.require_owner(),
            language=getattr(args, "language", None) or settings.language,
        )
        return asyncio.run(COMMANDS[args.command](args, settings, session))
    except (DocuScanError, ValueError) as err:
        console.print(f"[red]Error:[/red] {err}")
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
