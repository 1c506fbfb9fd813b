#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import argparse
import os
import sys

from ropstat.config import (
    COMMANDS,
    DEDUP_SCOPES,
    HISTOGRAM_MAX,
    LOOKAHEAD_WINDOW,
    OBJDUMP_CMD,
    READELF_CMD,
    RopstatOptions,
)
from ropstat.lib.runners import LISTING_COMMANDS, SYMBOL_COMMANDS, run_default_mode
from ropstat.lib.utils import check_command, get_version
from ropstat.logger import LOG, set_quiet

ROPSTAT_LOGO = """
 ┬─┐┌─┐┌─┐┌─┐┌┬┐┌─┐┌┬┐
 ├┬┘│ │├─┘└─┐ │ ├─┤ │
 ┴└─└─┘┴  └─┘ ┴ ┴ ┴ ┴
"""

COMMAND_HELP = {
    "all-gadgets": "Histogram of the distance between consecutive returns.",
    "call-gadgets": "Histogram of the distance from bl/blx calls to the next return.",
    "fn-count": "Count function symbols and classify return instructions.",
    "insn-count": "Count instructions in the disassembly.",
    "size": "Sum the .text section and file sizes.",
}


def build_args(argv=None):
    """
    Constructs command line arguments for the ropstat tool
    """
    parser = build_parser()
    return parser.parse_args(argv)


def add_source_args(parser):
    parser.add_argument(
        "-i",
        "--src",
        dest="src_dir_image",
        action="extend",
        default=[],
        nargs="+",
        help="Directories, binaries or static libraries. Defaults to current directory.",
    )
    parser.add_argument(
        "--listing",
        action="store_true",
        default=False,
        dest="listing_mode",
        help="Treat the sources as saved objdump -d listings instead of binaries.",
    )


def build_parser():
    parser = argparse.ArgumentParser(
        prog="ropstat",
        description="ROP gadget and return instruction statistics for ARM/Thumb firmware.",
    )
    parser.add_argument(
        "-o",
        "--reports",
        dest="reports_dir",
        default=os.path.join(os.getcwd(), "reports"),
        help="Reports directory. Defaults to reports.",
    )
    parser.add_argument(
        "--objdump",
        dest="objdump_cmd",
        default=OBJDUMP_CMD,
        help=f"Disassembler command. Defaults to {OBJDUMP_CMD}. The environment variable OBJDUMP_CMD is an alternative way to set this value.",
    )
    parser.add_argument(
        "--readelf",
        dest="readelf_cmd",
        default=READELF_CMD,
        help=f"Symbol table command. Defaults to {READELF_CMD}. The environment variable READELF_CMD is an alternative way to set this value.",
    )
    parser.add_argument(
        "--no-banner",
        action="store_true",
        default=False,
        dest="no_banner",
        help="Do not display banner.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {get_version()}",
        help="Display the version of ropstat.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=False,
        dest="quiet_mode",
        help="Disable logging and progress bars.",
    )
    subparsers = parser.add_subparsers(
        title="sub-commands",
        description="Analysis to run",
        dest="command",
        required=True,
    )
    for command in COMMANDS:
        sub_parser = subparsers.add_parser(command, help=COMMAND_HELP[command])
        add_source_args(sub_parser)
        if command in ("all-gadgets", "call-gadgets"):
            sub_parser.add_argument(
                "--max-len",
                dest="histogram_max",
                type=int,
                default=HISTOGRAM_MAX,
                help=f"Largest gadget length shown in the histogram. Defaults to {HISTOGRAM_MAX}.",
            )
        if command == "call-gadgets":
            sub_parser.add_argument(
                "--window",
                dest="window",
                type=int,
                default=LOOKAHEAD_WINDOW,
                help=f"Instructions searched for a return after each call. Defaults to {LOOKAHEAD_WINDOW}.",
            )
        if command == "fn-count":
            sub_parser.add_argument(
                "--dedup-scope",
                dest="dedup_scope",
                choices=DEDUP_SCOPES,
                default="kind",
                help="Track duplicate returns per return kind or per function regardless of kind.",
            )
            sub_parser.add_argument(
                "--dedup-by-name",
                action="store_true",
                default=False,
                dest="dedup_by_name",
                help="Identify functions by name only, so functions sharing a name share duplicate tracking.",
            )
    return parser


def handle_args(argv=None):
    """Handles the command-line arguments.

    This function parses the command-line arguments and returns a RopstatOptions object

    Returns:
        RopstatOptions: A class containing the parsed command-line arguments
    """
    args = build_args(argv)
    return RopstatOptions(
        command=args.command,
        src_dir_image=args.src_dir_image,
        reports_dir=args.reports_dir,
        objdump_cmd=args.objdump_cmd,
        readelf_cmd=args.readelf_cmd,
        window=getattr(args, "window", LOOKAHEAD_WINDOW),
        histogram_max=getattr(args, "histogram_max", HISTOGRAM_MAX),
        dedup_scope=getattr(args, "dedup_scope", "kind"),
        dedup_by_name=getattr(args, "dedup_by_name", False),
        listing_mode=args.listing_mode,
        quiet_mode=args.quiet_mode,
        no_banner=args.no_banner,
    )


def main(argv=None):
    """Main function of the ropstat tool"""
    try:
        options = handle_args(argv)
    except ValueError as e:
        LOG.error(e)
        sys.exit(2)
    set_quiet(options.quiet_mode)
    if not options.no_banner and not options.quiet_mode:
        print(ROPSTAT_LOGO)
        print(f"ropstat {get_version()}")
    if not options.listing_mode:
        needed = []
        if options.command in LISTING_COMMANDS:
            needed.append(options.objdump_cmd)
        if options.command in SYMBOL_COMMANDS:
            needed.append(options.readelf_cmd)
        for cmd in needed:
            if not check_command(cmd):
                LOG.warning(f"{cmd} was not found in PATH. Binaries will fail to analyze.")
    context = run_default_mode(options)
    if not context.binaries:
        sys.exit(1)


if __name__ == "__main__":
    main()
