import os
import re
from dataclasses import dataclass, field
from typing import List, Optional


def get_int_from_env(name, default):
    """
    Retrieves a value from an environment variable and converts it to an
    integer. If the conversion fails, returns the default value.

    Args:
        name (str): The name of the environment variable.
        default: The default value to return when the variable is unset or
            not a number.

    Returns:
        int: The converted integer value or the default.
    """
    value = os.getenv(name, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


# External tools. Both default to the GNU Arm embedded toolchain
OBJDUMP_CMD = os.getenv("OBJDUMP_CMD", "arm-none-eabi-objdump")
READELF_CMD = os.getenv("READELF_CMD", "arm-none-eabi-readelf")

# Seconds to wait for a single objdump/readelf run. 0 waits forever
TOOL_TIMEOUT = get_int_from_env("ROPSTAT_TOOL_TIMEOUT", 0)

# Number of instructions inspected after each bl/blx
LOOKAHEAD_WINDOW = get_int_from_env("ROPSTAT_WINDOW", 10)

# Histogram buckets run from 0 to this value inclusive
HISTOGRAM_MAX = get_int_from_env("ROPSTAT_HISTOGRAM_MAX", 10)

DEDUP_SCOPES = ("kind", "function")

COMMANDS = ("all-gadgets", "call-gadgets", "fn-count", "insn-count", "size")

# Listing line shapes printed by objdump -d
LABEL_LINE_REGEX = re.compile(r"([0-9A-Fa-f]{1,16}) <([^\s<>]*)>:")
INSTRUCTION_LINE_REGEX = re.compile(
    r"^\s*([0-9A-Fa-f]+):\t([0-9A-Fa-f ]+?)\s*\t(\S+)(?:\s+(.*))?$"
)
HEX_BYTE_DUMP_REGEX = re.compile(r"\t\w{2} \w{2} \w{2} \w{2}")
HEX_WORD_PAIR_REGEX = re.compile(r"\t\w{8} \w{8}")
HEX_WORD_PLACEHOLDER_REGEX = re.compile(r"\t\w{8} {2,}")
NOISE_MARKERS = ("Disassembly", "file format", ".word", ".byte", ".short", "...")
OPERAND_COMMENT_REGEX = re.compile(r"\s*;.*$")

# readelf -a section header rows, e.g.
#   [ 1] .text   PROGBITS   00008000 008000 0001a4 00  AX  0   0  4
TEXT_SECTION_REGEX = re.compile(
    r"\.text\S*\s+PROGBITS\s+([0-9A-Fa-f]+)\s+([0-9A-Fa-f]+)\s+([0-9A-Fa-f]+)"
)

ignore_directories = [
    ".git",
    ".svn",
    ".idea",
    ".vscode",
    "__pycache__",
    "node_modules",
    "venv",
    ".venv",
    "docs",
    "tests",
]

ignore_files = [
    ".map",
    ".txt",
    ".md",
    ".json",
    ".c",
    ".h",
    ".s",
    ".ld",
    ".py",
    ".lst",
    ".hex",
]

# Static libraries are unpacked and their objects disassembled one by one
KNOWN_AR_EXTNS = (".a", ".lib")


@dataclass
class RopstatOptions:
    """
    A data class representing the command-line options for ropstat.

    Attributes:
        command (str): One of the COMMANDS sub-commands.
        src_dir_image (list): Binaries, listings or directories to analyze.
        reports_dir (str): Directory where the JSON totals are written.
        objdump_cmd (str): Disassembler executable.
        readelf_cmd (str): Symbol table executable.
        window (int): Lookahead window for call-preceded gadgets.
        histogram_max (int): Largest histogram bucket.
        dedup_scope (str): "kind" keeps one dedup tracker per return kind,
            "function" shares a single tracker between all kinds.
        dedup_by_name (bool): Key dedup state by function name instead of
            span identity.
        listing_mode (bool): Inputs are saved objdump listings.
        quiet_mode (bool): Disable logging and progress bars.
        no_banner (bool): Do not print the banner.
    """
    command: str = "all-gadgets"
    src_dir_image: List[str] = field(default_factory=list)
    reports_dir: str = ""
    objdump_cmd: str = OBJDUMP_CMD
    readelf_cmd: str = READELF_CMD
    window: int = LOOKAHEAD_WINDOW
    histogram_max: int = HISTOGRAM_MAX
    dedup_scope: str = "kind"
    dedup_by_name: bool = False
    listing_mode: bool = False
    quiet_mode: bool = False
    no_banner: bool = False
    tool_timeout: Optional[int] = None

    def __post_init__(self):
        if self.command not in COMMANDS:
            raise ValueError(f"Unknown command {self.command}")
        if self.dedup_scope not in DEDUP_SCOPES:
            raise ValueError(f"Unknown dedup scope {self.dedup_scope}")
        if self.window < 1:
            raise ValueError("The lookahead window must be at least 1")
        if not self.src_dir_image:
            self.src_dir_image = [os.getcwd()]
        if not self.reports_dir:
            self.reports_dir = os.path.join(os.getcwd(), "reports")
        if self.tool_timeout is None:
            self.tool_timeout = TOOL_TIMEOUT or None

    @property
    def gadget_mode(self) -> Optional[str]:
        """Origin of the gadgets shown in the histogram, if any."""
        if self.command == "all-gadgets":
            return "stream"
        if self.command == "call-gadgets":
            return "call"
        return None
