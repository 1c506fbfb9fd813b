from pathlib import Path

import pytest

from ropstat.lib.analysis import (
    AnalysisContext,
    Gadget,
    GadgetOrigin,
    ReturnClassifier,
    analyze_instructions,
    analyze_listing,
    build_histogram,
    find_return_after,
    scan_call_gadgets,
    scan_stream_gadgets,
)
from ropstat.lib.classifier import InstructionKind, classify_stream
from ropstat.lib.listing import build_instruction_stream, parse_listing


def kinds_of(lines):
    return classify_stream(build_instruction_stream(lines))


@pytest.fixture
def listing_text():
    with open(Path(__file__).parent / "data" / "thumb-app.lst") as fp:
        return fp.read()


def test_single_pop():
    instructions, spans = parse_listing("pop {r4, pc}")
    events = ReturnClassifier().classify(classify_stream(instructions), spans)
    assert len(events) == 1
    assert events[0].kind == InstructionKind.POP_WITH_PC
    assert not events[0].is_duplicate
    assert events[0].function.name == ""
    assert scan_stream_gadgets(classify_stream(instructions)) == [Gadget(0, GadgetOrigin.STREAM_SCAN)]


def test_call_then_return():
    kinds = kinds_of(["bl foo", "mov r0, r1", "pop {r4, pc}"])
    gadgets, calls = scan_call_gadgets(kinds)
    assert gadgets == [Gadget(1, GadgetOrigin.CALL_PRECEDED, "BranchLink")]
    assert calls == {"BranchLink": 1}


def test_duplicate_in_same_function():
    instructions, spans = parse_listing("00008000 <main>:\npop {r4, pc}\nnop\npop {r4, pc}")
    context = analyze_instructions(instructions, spans)
    assert context.primary["PopWithPC"] == 1
    assert context.duplicates["PopWithPC"] == 1
    assert context.returns == 2


def test_label_resets_duplicate():
    text = "00008000 <a>:\npop {r4, pc}\n00008004 <b>:\npop {r4, pc}"
    events = ReturnClassifier().classify(*_kinds_and_spans(text))
    assert [e.is_duplicate for e in events] == [False, False]


def _kinds_and_spans(text):
    instructions, spans = parse_listing(text)
    return classify_stream(instructions), spans


def test_call_without_return_in_window():
    lines = ["mov r0, r1"] * 12 + ["bl foo"] + ["adds r0, #1"] * 10 + ["pop {r4, pc}"]
    gadgets, calls = scan_call_gadgets(kinds_of(lines))
    assert gadgets == []
    assert calls["BranchLink"] == 1


def test_call_at_end_of_stream():
    kinds = kinds_of(["mov r0, r1"] * 12 + ["bl foo"])
    assert find_return_after(kinds, 12, 10) is None
    gadgets, calls = scan_call_gadgets(kinds)
    assert gadgets == []
    assert calls["BranchLink"] == 1


def test_return_on_last_window_slot():
    kinds = kinds_of(["bl foo"] + ["nop"] * 9 + ["bx lr"])
    assert find_return_after(kinds, 0, 10) == 10
    gadgets, _ = scan_call_gadgets(kinds, 10)
    assert gadgets[0].length == 9
    assert scan_call_gadgets(kinds, 9)[0] == []


def test_overlapping_windows():
    kinds = kinds_of(["bl foo", "blx r3", "nop", "bx lr"])
    gadgets, calls = scan_call_gadgets(kinds)
    assert [(g.length, g.call_kind) for g in gadgets] == [(2, "BranchLink"), (1, "BranchLinkExchange")]
    assert calls == {"BranchLink": 1, "BranchLinkExchange": 1}


def test_unconditional_histogram():
    histogram = build_histogram([0, 3, 7], GadgetOrigin.STREAM_SCAN)
    assert histogram[0] == 3
    assert histogram[3] == 2
    assert histogram[7] == 1
    for i in range(8, 11):
        assert histogram[i] == 0
    assert sorted(histogram) == list(range(11))


def test_call_histogram_is_exact():
    histogram = build_histogram([0, 0, 2, 9], GadgetOrigin.CALL_PRECEDED)
    assert histogram == {0: 2, 1: 0, 2: 1, 3: 0, 4: 0, 5: 0, 6: 0, 7: 0, 8: 0, 9: 1, 10: 0}


def test_empty_stream():
    context = analyze_instructions([], [])
    assert context.instructions == 0
    assert context.returns == 0
    assert context.gadgets == []
    assert set(context.histogram(GadgetOrigin.STREAM_SCAN).values()) == {0}
    assert set(context.histogram(GadgetOrigin.CALL_PRECEDED).values()) == {0}


def test_stream_scan_idempotent(listing_text):
    instructions, _ = parse_listing(listing_text)
    kinds = classify_stream(instructions)
    assert scan_stream_gadgets(kinds) == scan_stream_gadgets(kinds)


def test_listing_totals(listing_text):
    context = analyze_listing(listing_text)
    assert context.binaries == 1
    assert context.instructions == 17
    assert context.returns == 6
    assert context.primary == {
        "PopWithPC": 1,
        "LoadMultipleWritebackPC": 1,
        "LoadRegisterPCFromStack": 1,
        "BranchExchangeLR": 2,
    }
    assert context.duplicates["PopWithPC"] == 1
    assert sum(context.primary.values()) + sum(context.duplicates.values()) == context.returns
    assert context.lengths(GadgetOrigin.STREAM_SCAN) == [5, 1, 1, 2, 1, 1]
    assert context.lengths(GadgetOrigin.CALL_PRECEDED) == [2, 0, 0]
    assert context.calls == {"BranchLink": 2, "BranchLinkExchange": 1}
    assert context.histogram(GadgetOrigin.STREAM_SCAN)[2] == 2


def test_shared_tracker_scope(listing_text):
    context = analyze_listing(listing_text, dedup_scope="function")
    # ldr.w pc follows ldmia.w in reset_handler
    assert context.primary["LoadRegisterPCFromStack"] == 0
    assert context.duplicates["LoadRegisterPCFromStack"] == 1
    assert context.returns == 6


def test_dedup_by_name_merges_same_named_functions(listing_text):
    by_span = analyze_listing(listing_text)
    by_name = analyze_listing(listing_text, dedup_by_name=True)
    assert by_span.duplicates["BranchExchangeLR"] == 0
    assert by_name.primary["BranchExchangeLR"] == 1
    assert by_name.duplicates["BranchExchangeLR"] == 1


def test_return_events_point_at_instructions(listing_text):
    instructions, spans = parse_listing(listing_text)
    events = ReturnClassifier().classify(classify_stream(instructions), spans)
    assert [e.index for e in events] == [5, 7, 9, 12, 14, 16]
    for e in events:
        assert 0 <= e.index < len(instructions)
    assert events[2].function.name == "helper"


def test_call_gadget_window_bound(listing_text):
    context = analyze_listing(listing_text, window=2)
    assert context.lengths(GadgetOrigin.CALL_PRECEDED) == [0, 0]
    assert all(g.length <= 1 for g in context.gadgets if g.origin == GadgetOrigin.CALL_PRECEDED)


def test_merge_contexts(listing_text):
    batch = AnalysisContext()
    batch.merge(analyze_listing(listing_text))
    batch.merge(analyze_listing(listing_text))
    assert batch.binaries == 2
    assert batch.instructions == 34
    assert batch.returns == 12
    assert batch.calls["BranchLink"] == 4
    assert len(batch.gadgets) == 18
    summary = batch.to_dict(GadgetOrigin.CALL_PRECEDED)
    assert summary["histogram"]["0"] == 4
    assert summary["gadget_mode"] == "CallPreceded"
    assert summary["return_kinds"]["PopWithPC"] == {"primary": 2, "duplicates": 2}


def test_conditional_returns_in_it_block():
    text = (
        "00008100 <f>:\n"
        "    8100:\tbf18      \tit\tne\n"
        "    8102:\tbd80      \tpopne\t{r7, pc}\n"
        "    8104:\t2000      \tmovs\tr0, #0\n"
        "    8106:\tbd80      \tpop\t{r7, pc}\n"
    )
    context = analyze_listing(text)
    assert context.returns == 2
    assert context.primary["PopWithPC"] == 1
    assert context.duplicates["PopWithPC"] == 1
    assert context.lengths(GadgetOrigin.STREAM_SCAN) == [1, 1]
