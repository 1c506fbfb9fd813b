"""
Classification of Thumb/ARM instructions into return and call forms.

This is the only place that looks at mnemonic and operand text. Every other
part of the engine works on the InstructionKind returned here.
"""

import re
from enum import Enum
from typing import List

from ropstat.lib.listing import Instruction


class InstructionKind(str, Enum):
    POP_WITH_PC = "PopWithPC"
    LOAD_MULTIPLE_WRITEBACK_PC = "LoadMultipleWritebackPC"
    LOAD_REGISTER_PC_FROM_STACK = "LoadRegisterPCFromStack"
    BRANCH_EXCHANGE_LR = "BranchExchangeLR"
    BRANCH_LINK_CALL = "BranchLinkCall"
    BRANCH_LINK_EXCHANGE_CALL = "BranchLinkExchangeCall"
    OTHER = "Other"

    @property
    def is_return(self) -> bool:
        return self in RETURN_KINDS

    @property
    def is_call(self) -> bool:
        return self in CALL_KINDS


# Priority order. The first matching form wins
RETURN_KINDS = (
    InstructionKind.POP_WITH_PC,
    InstructionKind.LOAD_MULTIPLE_WRITEBACK_PC,
    InstructionKind.LOAD_REGISTER_PC_FROM_STACK,
    InstructionKind.BRANCH_EXCHANGE_LR,
)
CALL_KINDS = (
    InstructionKind.BRANCH_LINK_CALL,
    InstructionKind.BRANCH_LINK_EXCHANGE_CALL,
)

# Call kinds as reported to users
CALL_KIND_NAMES = {
    InstructionKind.BRANCH_LINK_CALL: "BranchLink",
    InstructionKind.BRANCH_LINK_EXCHANGE_CALL: "BranchLinkExchange",
}

POP_INST = {"pop"}
LDM_INST = {"ldmia", "ldm", "ldmfd"}
LDR_INST = {"ldr"}
BX_INST = {"bx"}
BL_INST = {"bl"}
BLX_INST = {"blx"}

REGISTER_LIST_REGEX = re.compile(r"\{([^}]*)\}")
PC_REGS = {"pc", "r15"}
LR_REGS = {"lr", "r14"}
SP_REGS = {"sp", "r13"}

# Condition codes an IT block puts on pop/ldm/ldr
CONDITION_CODES = (
    "eq", "ne", "cs", "hs", "cc", "lo", "mi", "pl",
    "vs", "vc", "hi", "ls", "ge", "lt", "gt", "le", "al",
)


def _base_mnemonic(mnemonic: str) -> str:
    """Strips the .w/.n width qualifier"""
    return mnemonic.lower().split(".", 1)[0]


def _strip_condition(base: str, known: set) -> str:
    """Drops a condition suffix when what remains is one of the known mnemonics"""
    if base in known:
        return base
    for cond in CONDITION_CODES:
        if base.endswith(cond) and base[: -len(cond)] in known:
            return base[: -len(cond)]
    return base


def _split_operands(operands: str) -> List[str]:
    return [op.strip().lower() for op in operands.split(",") if op.strip()]


def _register_list(operands: str) -> List[str]:
    """Registers inside the {...} list of a pop/ldm, ranges left as written."""
    if m := REGISTER_LIST_REGEX.search(operands):
        return [r.strip().lower() for r in m.group(1).split(",") if r.strip()]
    return []


def _restores_pc(operands: str) -> bool:
    return any(reg in PC_REGS for reg in _register_list(operands))


def _is_pop_with_pc(base: str, operands: str) -> bool:
    return _strip_condition(base, POP_INST) in POP_INST and _restores_pc(operands)


def _is_ldm_writeback_pc(base: str, operands: str) -> bool:
    if _strip_condition(base, LDM_INST) not in LDM_INST:
        return False
    ops = _split_operands(operands)
    if not ops or not ops[0].endswith("!"):
        return False
    return ops[0].rstrip("!") in SP_REGS and _restores_pc(operands)


def _is_ldr_pc_from_stack(base: str, operands: str) -> bool:
    if _strip_condition(base, LDR_INST) not in LDR_INST:
        return False
    ops = _split_operands(operands)
    if len(ops) < 2 or ops[0] not in PC_REGS:
        return False
    # [sp] or [sp], #4 but never [sp, #off]
    return ops[1].replace(" ", "") in ("[sp]", "[r13]")


def _is_bx_lr(base: str, operands: str) -> bool:
    # bxeq and friends are conditional and never match
    return base in BX_INST and operands.strip().lower() in LR_REGS


def classify_text(mnemonic: str, operands: str) -> InstructionKind:
    """
    Classifies a mnemonic/operand pair.

    Args:
        mnemonic (str): Instruction mnemonic, e.g. "pop.w".
        operands (str): Operand text without trailing comments.

    Returns:
        InstructionKind: The return or call form, or OTHER.
    """
    if not mnemonic:
        return InstructionKind.OTHER
    base = _base_mnemonic(mnemonic)
    if _is_pop_with_pc(base, operands):
        return InstructionKind.POP_WITH_PC
    if _is_ldm_writeback_pc(base, operands):
        return InstructionKind.LOAD_MULTIPLE_WRITEBACK_PC
    if _is_ldr_pc_from_stack(base, operands):
        return InstructionKind.LOAD_REGISTER_PC_FROM_STACK
    if _is_bx_lr(base, operands):
        return InstructionKind.BRANCH_EXCHANGE_LR
    if base in BL_INST:
        return InstructionKind.BRANCH_LINK_CALL
    if base in BLX_INST:
        return InstructionKind.BRANCH_LINK_EXCHANGE_CALL
    return InstructionKind.OTHER


def classify_instruction(instr: Instruction) -> InstructionKind:
    return classify_text(instr.mnemonic, instr.operands)


def classify_stream(instructions: List[Instruction]) -> List[InstructionKind]:
    """Classifies a whole stream once so scanners can share the result."""
    return [classify_instruction(i) for i in instructions]
