import pytest

from ropstat.lib.classifier import (
    InstructionKind,
    classify_instruction,
    classify_text,
)
from ropstat.lib.listing import parse_instruction


@pytest.mark.parametrize("mnemonic,operands,expected", [
    ("pop", "{r4, pc}", InstructionKind.POP_WITH_PC),
    ("pop.w", "{r4, r5, r6, r7, r8, pc}", InstructionKind.POP_WITH_PC),
    ("pop", "{r4, r5}", InstructionKind.OTHER),
    ("ldmia.w", "sp!, {r4, r5, r6, r7, r8, pc}", InstructionKind.LOAD_MULTIPLE_WRITEBACK_PC),
    ("ldmia.w", "sp, {r4, pc}", InstructionKind.OTHER),
    ("ldmia.w", "r3!, {r4, pc}", InstructionKind.OTHER),
    ("ldmia.w", "sp!, {r4, r5}", InstructionKind.OTHER),
    ("ldr.w", "pc, [sp], #4", InstructionKind.LOAD_REGISTER_PC_FROM_STACK),
    ("ldr", "pc, [sp]", InstructionKind.LOAD_REGISTER_PC_FROM_STACK),
    ("ldr.w", "pc, [sp, #4]", InstructionKind.OTHER),
    ("ldr.w", "r3, [sp]", InstructionKind.OTHER),
    ("bx", "lr", InstructionKind.BRANCH_EXCHANGE_LR),
    ("bx", "r3", InstructionKind.OTHER),
    ("bxeq", "lr", InstructionKind.OTHER),
    ("popne", "{r7, pc}", InstructionKind.POP_WITH_PC),
    ("popeq.w", "{r4, r5, pc}", InstructionKind.POP_WITH_PC),
    ("popne", "{r4, r5}", InstructionKind.OTHER),
    ("ldmiaeq.w", "sp!, {r4, r5, r6, pc}", InstructionKind.LOAD_MULTIPLE_WRITEBACK_PC),
    ("ldmfdne", "sp!, {r4, pc}", InstructionKind.LOAD_MULTIPLE_WRITEBACK_PC),
    ("ldrne.w", "pc, [sp], #4", InstructionKind.LOAD_REGISTER_PC_FROM_STACK),
    ("ldrbne", "pc, [sp]", InstructionKind.OTHER),
    ("bxne", "lr", InstructionKind.OTHER),
    ("bl", "801c <helper>", InstructionKind.BRANCH_LINK_CALL),
    ("blx", "r3", InstructionKind.BRANCH_LINK_EXCHANGE_CALL),
    ("bls.n", "8040 <main+0x40>", InstructionKind.OTHER),
    ("blt", "8040 <main+0x40>", InstructionKind.OTHER),
    ("push", "{r7, lr}", InstructionKind.OTHER),
    ("", "", InstructionKind.OTHER),
])
def test_classify_text(mnemonic, operands, expected):
    assert classify_text(mnemonic, operands) == expected


def test_classify_instruction_from_listing():
    instr = parse_instruction(0, "    8028:\te8bd 81f0 \tldmia.w\tsp!, {r4, r5, r6, r7, r8, pc}")
    kind = classify_instruction(instr)
    assert kind == InstructionKind.LOAD_MULTIPLE_WRITEBACK_PC
    assert kind.is_return
    assert not kind.is_call


def test_call_kinds():
    assert InstructionKind.BRANCH_LINK_CALL.is_call
    assert InstructionKind.BRANCH_LINK_EXCHANGE_CALL.is_call
    assert not InstructionKind.POP_WITH_PC.is_call
