"""
Turns objdump -d text into instruction records and function spans.

The listing is consumed line by line. Banners, data directives, elision
markers, raw hex dumps and label lines are dropped; every other line becomes
an Instruction. Unknown line shapes are kept rather than rejected so that a
truncated or unusual listing still yields a best-effort stream.
"""

from bisect import bisect_right
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from ropstat.config import (
    HEX_BYTE_DUMP_REGEX,
    HEX_WORD_PAIR_REGEX,
    HEX_WORD_PLACEHOLDER_REGEX,
    INSTRUCTION_LINE_REGEX,
    LABEL_LINE_REGEX,
    NOISE_MARKERS,
    OPERAND_COMMENT_REGEX,
)
from ropstat.lib.utils import parse_hex_field


@dataclass(frozen=True)
class Instruction:
    index: int
    mnemonic: str
    operands: str
    raw_line: str
    address: Optional[int] = None
    encoding: str = ""


@dataclass(frozen=True)
class FunctionSpan:
    name: str
    start_index: int
    address: Optional[int] = None

    @property
    def key(self) -> Tuple[int, str]:
        return self.start_index, self.name


# Owner of every instruction that precedes the first label
UNNAMED_FUNCTION = FunctionSpan("", 0)


def match_label(line: str) -> Optional[FunctionSpan]:
    """Returns a span without start index for a `<addr> <name>:` line."""
    if m := LABEL_LINE_REGEX.search(line):
        return FunctionSpan(m.group(2), 0, parse_hex_field(m.group(1)))
    return None


def is_instruction_line(line: str) -> bool:
    """
    Checks whether a listing line holds an executable instruction.

    Args:
        line (str): A single line of objdump output.

    Returns:
        bool: False for blank lines, banners, data directives, elision
        markers, hex dumps and labels. True otherwise.
    """
    if not line or not line.strip():
        return False
    if any(marker in line for marker in NOISE_MARKERS):
        return False
    return not (
        HEX_BYTE_DUMP_REGEX.search(line)
        or LABEL_LINE_REGEX.search(line)
        or HEX_WORD_PAIR_REGEX.search(line)
        or HEX_WORD_PLACEHOLDER_REGEX.search(line)
    )


def parse_instruction(index: int, line: str) -> Instruction:
    """Splits an instruction line into mnemonic and operand text."""
    line = line.rstrip("\r\n")
    address = None
    encoding = ""
    if m := INSTRUCTION_LINE_REGEX.match(line):
        address = parse_hex_field(m.group(1))
        encoding = m.group(2).strip()
        mnemonic = m.group(3)
        operands = m.group(4) or ""
    else:
        parts = line.split(None, 1)
        mnemonic = parts[0] if parts else ""
        operands = parts[1] if len(parts) > 1 else ""
    operands = OPERAND_COMMENT_REGEX.sub("", operands).strip()
    return Instruction(
        index=index,
        mnemonic=mnemonic.lower(),
        operands=operands,
        raw_line=line,
        address=address,
        encoding=encoding,
    )


def build_instruction_stream(lines: Iterable[str]) -> List[Instruction]:
    """
    Builds the filtered instruction sequence for one listing.

    Indices are dense over the filtered result, starting at 0.
    """
    instructions = []
    for line in lines:
        if is_instruction_line(line):
            instructions.append(parse_instruction(len(instructions), line))
    return instructions


def track_functions(lines: Iterable[str]) -> List[FunctionSpan]:
    """
    Records a FunctionSpan at every label line of the raw listing.

    The start index of a span is the number of instructions seen before its
    label, so a label followed directly by another label yields an empty
    span. Repeated names produce separate spans.
    """
    spans = []
    seen = 0
    for line in lines:
        if label := match_label(line):
            spans.append(FunctionSpan(label.name, seen, label.address))
        elif is_instruction_line(line):
            seen += 1
    return spans


def parse_listing(text: str) -> Tuple[List[Instruction], List[FunctionSpan]]:
    """Parses a complete listing into instructions and function spans."""
    lines = text.splitlines()
    return build_instruction_stream(lines), track_functions(lines)


def function_at(spans: List[FunctionSpan], index: int) -> FunctionSpan:
    """
    Finds the span enclosing an instruction index.

    When several spans start at the same index the last one wins, as the
    earlier ones are empty.
    """
    pos = bisect_right([s.start_index for s in spans], index)
    if pos == 0:
        return UNNAMED_FUNCTION
    return spans[pos - 1]
