"""
CHIP-8 Instruction Decoder
===========================
Maps a raw 16-bit instruction word onto an operation tag plus the operand
fields it uses.  Pure: nothing here touches machine state.

Word layout (big-endian, two bytes per instruction):

    F X Y N      F = group nibble, X/Y = register indices, N = 4-bit immediate
    F X K K      KK = 8-bit immediate
    F N N N      NNN = 12-bit address

Unsupported encodings raise UnrecognizedOpcode carrying the word and the
address it was fetched from; the caller decides whether to halt, skip or log.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum


class Chip8Error(Exception):
    """Base for interpreter-generated faults."""
    pass


class UnrecognizedOpcode(Chip8Error):
    def __init__(self, opcode: int, address: int = 0):
        self.opcode = opcode & 0xFFFF
        self.address = address & 0xFFFF
        super().__init__(
            f"Unrecognized opcode {self.opcode:#06x} @ {self.address:#05x}")


class Op(Enum):
    CLS = "cls"                 # 00E0
    RET = "ret"                 # 00EE
    JP = "jp"                   # 1nnn
    CALL = "call"               # 2nnn
    SE_IMM = "se_imm"           # 3xkk
    SNE_IMM = "sne_imm"         # 4xkk
    SE_REG = "se_reg"           # 5xy_
    LD_IMM = "ld_imm"           # 6xkk
    ADD_IMM = "add_imm"         # 7xkk
    LD_REG = "ld_reg"           # 8xy0
    OR = "or"                   # 8xy1
    AND = "and"                 # 8xy2
    XOR = "xor"                 # 8xy3
    ADD_REG = "add_reg"         # 8xy4
    SUB = "sub"                 # 8xy5
    SHR = "shr"                 # 8xy6
    SUBN = "subn"               # 8xy7
    SHL = "shl"                 # 8xyE
    SNE_REG = "sne_reg"         # 9xy_
    LD_I = "ld_i"               # Annn
    JP_V0 = "jp_v0"             # Bnnn
    RND = "rnd"                 # Cxkk
    DRW = "drw"                 # Dxyn
    SKP = "skp"                 # Ex9E
    SKNP = "sknp"               # ExA1
    LD_VX_DT = "ld_vx_dt"       # Fx07
    LD_VX_K = "ld_vx_k"         # Fx0A
    LD_DT_VX = "ld_dt_vx"       # Fx15
    LD_ST_VX = "ld_st_vx"       # Fx18
    ADD_I = "add_i"             # Fx1E
    LD_F = "ld_f"               # Fx29
    LD_B = "ld_b"               # Fx33
    LD_MEM_VX = "ld_mem_vx"     # Fx55
    LD_VX_MEM = "ld_vx_mem"     # Fx65


# Sub-op tables (low nibble / low byte → Op)
ALU_OPS = {
    0x0: Op.LD_REG, 0x1: Op.OR, 0x2: Op.AND, 0x3: Op.XOR,
    0x4: Op.ADD_REG, 0x5: Op.SUB, 0x6: Op.SHR, 0x7: Op.SUBN,
    0xE: Op.SHL,
}

KEY_OPS = {
    0x9E: Op.SKP,
    0xA1: Op.SKNP,
}

MISC_OPS = {
    0x07: Op.LD_VX_DT, 0x0A: Op.LD_VX_K, 0x15: Op.LD_DT_VX,
    0x18: Op.LD_ST_VX, 0x1E: Op.ADD_I, 0x29: Op.LD_F,
    0x33: Op.LD_B, 0x55: Op.LD_MEM_VX, 0x65: Op.LD_VX_MEM,
}

# Groups whose whole operation is selected by the high nibble
GROUP_OPS = {
    0x1: Op.JP, 0x2: Op.CALL, 0x3: Op.SE_IMM, 0x4: Op.SNE_IMM,
    0x5: Op.SE_REG, 0x6: Op.LD_IMM, 0x7: Op.ADD_IMM, 0x9: Op.SNE_REG,
    0xA: Op.LD_I, 0xB: Op.JP_V0, 0xC: Op.RND, 0xD: Op.DRW,
}


@dataclass(frozen=True)
class Instruction:
    """One decoded instruction word."""
    op: Op
    word: int
    x: int = 0
    y: int = 0
    n: int = 0
    kk: int = 0
    nnn: int = 0

    @property
    def group(self) -> int:
        return (self.word >> 12) & 0xF

    def __str__(self) -> str:
        return format_instruction(self)


def decode(word: int, address: int = 0) -> Instruction:
    """Decode one instruction word.

    *address* is only used to report where an unrecognized word came from.
    """
    word &= 0xFFFF
    f = (word >> 12) & 0xF
    x = (word >> 8) & 0xF
    y = (word >> 4) & 0xF
    n = word & 0xF
    kk = word & 0xFF
    nnn = word & 0xFFF

    if f == 0x0:
        if word == 0x00E0:
            op = Op.CLS
        elif word == 0x00EE:
            op = Op.RET
        else:
            # 0nnn (native machine-code call) has no meaning here
            raise UnrecognizedOpcode(word, address)
    elif f == 0x8:
        op = ALU_OPS.get(n)
    elif f == 0xE:
        op = KEY_OPS.get(kk)
    elif f == 0xF:
        op = MISC_OPS.get(kk)
    else:
        op = GROUP_OPS[f]

    if op is None:
        raise UnrecognizedOpcode(word, address)
    return Instruction(op, word, x, y, n, kk, nnn)


# ---------------------------------------------------------------------------
#  Mnemonics
# ---------------------------------------------------------------------------

_ALU_NAMES = {
    Op.LD_REG: "LD", Op.OR: "OR", Op.AND: "AND", Op.XOR: "XOR",
    Op.ADD_REG: "ADD", Op.SUB: "SUB", Op.SHR: "SHR", Op.SUBN: "SUBN",
    Op.SHL: "SHL",
}


def format_instruction(ins: Instruction) -> str:
    """Render an instruction in the conventional CHIP-8 assembly syntax."""
    op, x, y = ins.op, ins.x, ins.y
    if op is Op.CLS:
        return "CLS"
    if op is Op.RET:
        return "RET"
    if op is Op.JP:
        return f"JP {ins.nnn:#05x}"
    if op is Op.CALL:
        return f"CALL {ins.nnn:#05x}"
    if op is Op.SE_IMM:
        return f"SE V{x:X}, {ins.kk:#04x}"
    if op is Op.SNE_IMM:
        return f"SNE V{x:X}, {ins.kk:#04x}"
    if op is Op.SE_REG:
        return f"SE V{x:X}, V{y:X}"
    if op is Op.LD_IMM:
        return f"LD V{x:X}, {ins.kk:#04x}"
    if op is Op.ADD_IMM:
        return f"ADD V{x:X}, {ins.kk:#04x}"
    if op in _ALU_NAMES:
        return f"{_ALU_NAMES[op]} V{x:X}, V{y:X}"
    if op is Op.SNE_REG:
        return f"SNE V{x:X}, V{y:X}"
    if op is Op.LD_I:
        return f"LD I, {ins.nnn:#05x}"
    if op is Op.JP_V0:
        return f"JP V0, {ins.nnn:#05x}"
    if op is Op.RND:
        return f"RND V{x:X}, {ins.kk:#04x}"
    if op is Op.DRW:
        return f"DRW V{x:X}, V{y:X}, {ins.n}"
    if op is Op.SKP:
        return f"SKP V{x:X}"
    if op is Op.SKNP:
        return f"SKNP V{x:X}"
    if op is Op.LD_VX_DT:
        return f"LD V{x:X}, DT"
    if op is Op.LD_VX_K:
        return f"LD V{x:X}, K"
    if op is Op.LD_DT_VX:
        return f"LD DT, V{x:X}"
    if op is Op.LD_ST_VX:
        return f"LD ST, V{x:X}"
    if op is Op.ADD_I:
        return f"ADD I, V{x:X}"
    if op is Op.LD_F:
        return f"LD F, V{x:X}"
    if op is Op.LD_B:
        return f"LD B, V{x:X}"
    if op is Op.LD_MEM_VX:
        return f"LD [I], V{x:X}"
    if op is Op.LD_VX_MEM:
        return f"LD V{x:X}, [I]"
    return f".dw {ins.word:#06x}"
