import os

from rich.progress import Progress

from ropstat.config import RopstatOptions
from ropstat.lib.analysis import AnalysisContext, analyze_listing
from ropstat.lib.errors import RopstatError
from ropstat.lib.report import report
from ropstat.lib.tools import (
    count_function_symbols,
    disassemble,
    read_elf_info,
    read_listing,
    text_section_size,
)
from ropstat.lib.utils import gen_file_list
from ropstat.logger import LOG

# Sub-commands that need the disassembly and the symbol table respectively
LISTING_COMMANDS = ("all-gadgets", "call-gadgets", "fn-count", "insn-count")
SYMBOL_COMMANDS = ("fn-count", "size")


def run_default_mode(options: RopstatOptions) -> AnalysisContext:
    """
    Analyzes every input of the command line and prints the report.

    Args:
        options (RopstatOptions): Parsed command-line options.

    Returns:
        AnalysisContext: Batch totals.
    """
    files = gen_file_list(options.src_dir_image, options.listing_mode)
    if not files:
        LOG.warning(f"No binaries found in {options.src_dir_image}")
    runner = AnalysisRunner(options)
    context = runner.start(files)
    report(options, files, context)
    return context


class AnalysisRunner:
    """
    Analyzes binaries one at a time.

    Each binary is analyzed into its own AnalysisContext. Only contexts that
    completed without error are merged into the batch context, so a failing
    binary never leaves partial counts behind.
    """

    def __init__(self, options: RopstatOptions):
        self.options = options
        self.context = AnalysisContext()
        self.progress = Progress(
            transient=True,
            redirect_stderr=True,
            redirect_stdout=True,
            refresh_per_second=1,
            disable=options.quiet_mode,
        )
        self.task = None

    def start(self, files):
        """Runs the selected sub-command over all files and returns the batch context."""
        if self.options.listing_mode and self.options.command in SYMBOL_COMMANDS:
            LOG.warning("Symbol tables are not available for listings. Symbol and size totals stay 0.")
        with self.progress:
            self.task = self.progress.add_task(
                f"[green] Scanning {len(files)} binaries",
                total=len(files),
                start=True,
            )
            for f in files:
                self._process_file(f)
                self.progress.advance(self.task)
        if self.context.failures:
            LOG.warning(f"{len(self.context.failures)} of {len(files)} binaries could not be analyzed")
        return self.context

    def _process_file(self, f):
        self.progress.update(self.task, description=f"Processing [bold]{f}[/bold]")
        LOG.debug(f"Looking for {self.options.command} in {f}")
        try:
            binary_context = self.analyze_file(f)
        except RopstatError as e:
            LOG.error(f"Skipping {f}: {e}")
            self.context.failures.append((f, str(e)))
            return
        self.context.merge(binary_context)

    def analyze_file(self, f) -> AnalysisContext:
        """
        Builds the context of a single binary.

        Raises:
            RopstatError: When a tool fails or its output cannot be used.
        """
        command = self.options.command
        context = AnalysisContext(binaries=1)
        if command in LISTING_COMMANDS:
            if self.options.listing_mode:
                text = read_listing(f)
            else:
                text = disassemble(f, self.options.objdump_cmd, self.options.tool_timeout)
            context = analyze_listing(
                text,
                window=self.options.window,
                dedup_scope=self.options.dedup_scope,
                dedup_by_name=self.options.dedup_by_name,
            )
        if command in SYMBOL_COMMANDS and not self.options.listing_mode:
            lines = read_elf_info(f, self.options.readelf_cmd, self.options.tool_timeout).splitlines()
            context.function_symbols = count_function_symbols(lines)
            context.text_bytes = text_section_size(lines)
        if command == "size" and not self.options.listing_mode:
            try:
                context.file_bytes = os.path.getsize(f)
            except OSError as e:
                raise RopstatError(f"Unable to stat {f}: {e}") from e
        return context
