"""
Return classification, gadget scanning and aggregation.

Every function here works on an already classified instruction stream. State
that outlives a single binary lives in an AnalysisContext which the caller
owns and merges explicitly.
"""

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Hashable, List, Optional, Sequence, Tuple

from ropstat.config import HISTOGRAM_MAX, LOOKAHEAD_WINDOW
from ropstat.lib.classifier import (
    CALL_KIND_NAMES,
    RETURN_KINDS,
    InstructionKind,
    classify_stream,
)
from ropstat.lib.listing import (
    UNNAMED_FUNCTION,
    FunctionSpan,
    Instruction,
    parse_listing,
)
from ropstat.logger import LOG


class GadgetOrigin(str, Enum):
    STREAM_SCAN = "StreamScan"
    CALL_PRECEDED = "CallPreceded"


@dataclass(frozen=True)
class ReturnEvent:
    index: int
    kind: InstructionKind
    function: FunctionSpan
    is_duplicate: bool


@dataclass(frozen=True)
class Gadget:
    length: int
    origin: GadgetOrigin
    call_kind: Optional[str] = None


def _return_counters():
    return {k.value: 0 for k in RETURN_KINDS}


def _call_counters():
    return {name: 0 for name in CALL_KIND_NAMES.values()}


@dataclass
class AnalysisContext:
    """
    Running totals for one binary or for a whole batch.

    A context is filled by analyze_listing for a single binary and folded into
    the batch context with merge. Nothing here is shared between threads.
    """
    binaries: int = 0
    instructions: int = 0
    returns: int = 0
    primary: Dict[str, int] = field(default_factory=_return_counters)
    duplicates: Dict[str, int] = field(default_factory=_return_counters)
    calls: Dict[str, int] = field(default_factory=_call_counters)
    gadgets: List[Gadget] = field(default_factory=list)
    function_symbols: int = 0
    text_bytes: int = 0
    file_bytes: int = 0
    failures: List[Tuple[str, str]] = field(default_factory=list)

    def merge(self, other: "AnalysisContext") -> "AnalysisContext":
        """Adds the totals of another context to this one."""
        self.binaries += other.binaries
        self.instructions += other.instructions
        self.returns += other.returns
        for k, v in other.primary.items():
            self.primary[k] = self.primary.get(k, 0) + v
        for k, v in other.duplicates.items():
            self.duplicates[k] = self.duplicates.get(k, 0) + v
        for k, v in other.calls.items():
            self.calls[k] = self.calls.get(k, 0) + v
        self.gadgets.extend(other.gadgets)
        self.function_symbols += other.function_symbols
        self.text_bytes += other.text_bytes
        self.file_bytes += other.file_bytes
        self.failures.extend(other.failures)
        return self

    def record_returns(self, events: Sequence[ReturnEvent]) -> None:
        for e in events:
            if e.is_duplicate:
                self.duplicates[e.kind.value] += 1
            else:
                self.primary[e.kind.value] += 1
            self.returns += 1

    def lengths(self, origin: GadgetOrigin) -> List[int]:
        return [g.length for g in self.gadgets if g.origin == origin]

    def histogram(self, origin: GadgetOrigin, max_len: int = HISTOGRAM_MAX) -> Dict[int, int]:
        return build_histogram(self.lengths(origin), origin, max_len)

    def to_dict(self, origin: Optional[GadgetOrigin] = None, max_len: int = HISTOGRAM_MAX) -> Dict:
        """Summary suitable for JSON export. Individual gadgets are not included."""
        summary = {
            "binaries": self.binaries,
            "instructions": self.instructions,
            "returns": self.returns,
            "return_kinds": {
                k: {"primary": self.primary[k], "duplicates": self.duplicates[k]}
                for k in self.primary
            },
            "calls": dict(self.calls),
            "function_symbols": self.function_symbols,
            "text_bytes": self.text_bytes,
            "file_bytes": self.file_bytes,
            "failures": [{"file": f, "reason": r} for f, r in self.failures],
        }
        if origin:
            summary["gadget_mode"] = origin.value
            summary["histogram"] = {
                str(i): c for i, c in self.histogram(origin, max_len).items()
            }
        return summary


class ReturnClassifier:
    """
    Emits a ReturnEvent for every return instruction and flags duplicates.

    The tracker remembers the last function that produced a (non-duplicate)
    return. A return is a duplicate when its enclosing function is that
    function.

    Args:
        scope (str): "kind" keeps one tracker per return kind, "function"
            shares one tracker between all kinds.
        by_name (bool): Compare functions by name only. Two distinct functions
            with the same name then share dedup state.
    """

    def __init__(self, scope: str = "kind", by_name: bool = False):
        self.scope = scope
        self.by_name = by_name
        self._last_function: Dict[Optional[InstructionKind], Hashable] = {}

    def _function_key(self, span: FunctionSpan) -> Hashable:
        return span.name if self.by_name else span.key

    def _tracker(self, kind: InstructionKind) -> Optional[InstructionKind]:
        return kind if self.scope == "kind" else None

    def observe(self, index: int, kind: InstructionKind, span: FunctionSpan) -> ReturnEvent:
        tracker = self._tracker(kind)
        key = self._function_key(span)
        is_duplicate = tracker in self._last_function and self._last_function[tracker] == key
        if not is_duplicate:
            self._last_function[tracker] = key
        return ReturnEvent(index, kind, span, is_duplicate)

    def classify(
        self,
        kinds: Sequence[InstructionKind],
        spans: Sequence[FunctionSpan],
    ) -> List[ReturnEvent]:
        """
        Walks the stream once and returns the events in index order.

        Args:
            kinds: Classification of every instruction in the stream.
            spans: Function spans ordered by start index.
        """
        events = []
        span = UNNAMED_FUNCTION
        next_span = 0
        for index, kind in enumerate(kinds):
            while next_span < len(spans) and spans[next_span].start_index <= index:
                span = spans[next_span]
                next_span += 1
            if kind.is_return:
                events.append(self.observe(index, kind, span))
        return events


def scan_stream_gadgets(kinds: Sequence[InstructionKind]) -> List[Gadget]:
    """
    Measures the distance from the previous return (or stream start) to every
    return. No deduplication is applied.
    """
    gadgets = []
    dist = 0
    for kind in kinds:
        if kind.is_return:
            gadgets.append(Gadget(dist, GadgetOrigin.STREAM_SCAN))
            dist = 0
        else:
            dist += 1
    return gadgets


def find_return_after(
    kinds: Sequence[InstructionKind], start: int, window: int = LOOKAHEAD_WINDOW
) -> Optional[int]:
    """
    Looks at kinds[start + 1] .. kinds[start + window] for the first return.

    Returns:
        int: The 1-based offset of the return from start, or None when the
        window or the stream runs out first.
    """
    end = min(start + window, len(kinds) - 1)
    for pos in range(start + 1, end + 1):
        if kinds[pos].is_return:
            return pos - start
    return None


def scan_call_gadgets(
    kinds: Sequence[InstructionKind], window: int = LOOKAHEAD_WINDOW
) -> Tuple[List[Gadget], Counter]:
    """
    Finds the nearest return after every bl/blx.

    Lookahead windows of neighbouring calls are independent, so one return
    may close several gadgets.

    Returns:
        tuple: The call-preceded gadgets and the number of calls per call kind.
    """
    gadgets = []
    calls = Counter()
    for index, kind in enumerate(kinds):
        if not kind.is_call:
            continue
        call_kind = CALL_KIND_NAMES[kind]
        calls[call_kind] += 1
        offset = find_return_after(kinds, index, window)
        if offset is not None:
            LOG.debug(f"Call at {index} reaches a return with len {offset - 1}")
            gadgets.append(Gadget(offset - 1, GadgetOrigin.CALL_PRECEDED, call_kind))
    return gadgets, calls


def build_histogram(
    lengths: Sequence[int], origin: GadgetOrigin, max_len: int = HISTOGRAM_MAX
) -> Dict[int, int]:
    """
    Buckets gadget lengths for i in 0..max_len.

    Stream-scan gadgets are counted cumulatively (length >= i); call-preceded
    gadgets are counted exactly (length == i).
    """
    if origin == GadgetOrigin.STREAM_SCAN:
        return {i: sum(1 for n in lengths if n >= i) for i in range(max_len + 1)}
    return {i: sum(1 for n in lengths if n == i) for i in range(max_len + 1)}


def analyze_instructions(
    instructions: Sequence[Instruction],
    spans: Sequence[FunctionSpan],
    window: int = LOOKAHEAD_WINDOW,
    dedup_scope: str = "kind",
    dedup_by_name: bool = False,
) -> AnalysisContext:
    """
    Runs every scanner over one binary's instruction stream.

    Args:
        instructions: The filtered instruction stream.
        spans: Function spans of the same listing.
        window: Lookahead for call-preceded gadgets.
        dedup_scope: See ReturnClassifier.
        dedup_by_name: See ReturnClassifier.

    Returns:
        AnalysisContext: Totals for this binary alone.
    """
    context = AnalysisContext(binaries=1, instructions=len(instructions))
    kinds = classify_stream(instructions)
    classifier = ReturnClassifier(dedup_scope, dedup_by_name)
    context.record_returns(classifier.classify(kinds, spans))
    context.gadgets.extend(scan_stream_gadgets(kinds))
    call_gadgets, calls = scan_call_gadgets(kinds, window)
    context.gadgets.extend(call_gadgets)
    for name, count in calls.items():
        context.calls[name] += count
    return context


def analyze_listing(text: str, **kwargs) -> AnalysisContext:
    """Parses an objdump listing and analyzes it. See analyze_instructions."""
    instructions, spans = parse_listing(text)
    LOG.debug(f"Listing has {len(instructions)} instructions in {len(spans)} functions")
    return analyze_instructions(instructions, spans, **kwargs)
