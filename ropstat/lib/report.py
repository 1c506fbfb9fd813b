import os
import uuid
from datetime import datetime
from pathlib import Path

from rich.terminal_theme import MONOKAI

from ropstat.config import RopstatOptions
from ropstat.lib.analysis import AnalysisContext, GadgetOrigin
from ropstat.lib.utils import create_table, export_metadata
from ropstat.logger import LOG, console

GADGET_MODES = {
    "stream": GadgetOrigin.STREAM_SCAN,
    "call": GadgetOrigin.CALL_PRECEDED,
}


def print_histogram_table(context: AnalysisContext, origin: GadgetOrigin, max_len: int):
    """Prints gadget counts per length bucket."""
    if origin == GadgetOrigin.STREAM_SCAN:
        title, predicate = "Gadgets by Tail Length", "len >= i"
    else:
        title, predicate = "Call-preceded Gadgets by Length", "len == i"
    table = create_table(title, "i", f"Gadgets ({predicate})")
    for i, count in context.histogram(origin, max_len).items():
        table.add_row(str(i), str(count))
    console.print(table)


def print_calls_table(context: AnalysisContext):
    table = create_table("Calls", "Kind", "Count")
    for kind, count in context.calls.items():
        table.add_row(kind, str(count))
    console.print(table)


def print_returns_table(context: AnalysisContext):
    """Prints primary and duplicate counts for every return kind."""
    table = create_table("Return Instructions", "Kind", "Returns", "Duplicates")
    for kind, count in context.primary.items():
        table.add_row(kind, str(count), str(context.duplicates[kind]))
    console.print(table)


def print_failures_table(context: AnalysisContext, files):
    table = create_table("Failed Binaries", "Binary", "Reason")
    for f, reason in context.failures:
        name = f if len(files) > 1 else os.path.basename(f)
        table.add_row(name, f"[bright_red]{reason}")
    console.print(table)


def report(options: RopstatOptions, files, context: AnalysisContext):
    """Prints the totals of the selected sub-command and exports them as JSON.

    Args:
        options: A RopstatOptions object containing settings.
        files: The analyzed files.
        context: Batch totals.
    """
    command = options.command
    origin = GADGET_MODES.get(options.gadget_mode)
    if origin:
        print_histogram_table(context, origin, options.histogram_max)
        for i, count in context.histogram(origin, options.histogram_max).items():
            LOG.debug(f"Found {count} {origin.value} gadgets with len {i}")
    if command == "call-gadgets":
        print_calls_table(context)
        LOG.info(
            f"Found total of {context.calls['BranchLink']} BL and "
            f"{context.calls['BranchLinkExchange']} BLX calls in binaries"
        )
    if command == "fn-count":
        print_returns_table(context)
        LOG.info(f"Found {context.function_symbols} function symbols in binaries")
    if command in ("all-gadgets", "call-gadgets", "fn-count"):
        LOG.info(f"Found {context.returns} return instructions in total")
    if command == "insn-count":
        LOG.info(f"Found {context.instructions} instructions in binaries")
    if command == "size":
        LOG.info(f"Size of all .text sections: {context.text_bytes}")
        LOG.info(f"Size of all files: {context.file_bytes}")
    if context.failures:
        print_failures_table(context, files)
    if not os.path.exists(options.reports_dir):
        os.makedirs(options.reports_dir)
    run_uuid = os.environ.get("SCAN_ID", str(uuid.uuid4()))
    common_metadata = {
        "scan_id": run_uuid,
        "created": f"{datetime.now():%Y-%m-%d %H:%M:%S%z}",
        "command": command,
        "files": files,
    }
    outfile = export_metadata(
        options.reports_dir,
        {**common_metadata, **context.to_dict(origin, options.histogram_max)},
        f"ropstat-{command}",
    )
    LOG.debug(f"Totals written to {outfile}")
    # Try console output as html
    html_file = Path(options.reports_dir) / "ropstat-output.html"
    console.save_html(html_file, theme=MONOKAI)
    LOG.debug(f"HTML report written to {html_file}")
