"""
CHIP-8 Assembler
=================
Translates assembly text into big-endian CHIP-8 program bytes, using the
same mnemonics the disassembler prints.

Supports:
  - Labels (``name:``, alone or in front of an instruction)
  - Every standard CHIP-8 instruction
  - Immediate literals (decimal, hex with 0x prefix, binary with 0b)
  - Comments (';' to end of line)
  - .org, .db, .dw directives (.dw words are big-endian)

Usage:
  from asm import assemble
  program = assemble(source_text)          # assembled for 0x200
"""

from __future__ import annotations
import re

PROGRAM_BASE = 0x200

_LABEL_RE = re.compile(r"^([A-Za-z_.][\w.]*):\s*(.*)$")

# Register-register ALU ops (8xyN)
ALU_SUB = {
    "or": 0x1, "and": 0x2, "xor": 0x3, "sub": 0x5,
    "shr": 0x6, "subn": 0x7, "shl": 0xE,
}

# Fx__ forms of LD, keyed by (dst, src) with "v" standing for Vx
LD_SPECIAL = {
    ("v", "dt"):  0x07,
    ("v", "k"):   0x0A,
    ("dt", "v"):  0x15,
    ("st", "v"):  0x18,
    ("f", "v"):   0x29,
    ("b", "v"):   0x33,
    ("[i]", "v"): 0x55,
    ("v", "[i]"): 0x65,
}

# ---------------------------------------------------------------------------
#  Parser helpers
# ---------------------------------------------------------------------------

def _is_reg(tok: str) -> bool:
    tok = tok.strip().lower()
    return len(tok) == 2 and tok[0] == "v" and tok[1] in "0123456789abcdef"

def _parse_reg(tok: str) -> int:
    """Parse 'V0'-'VF'. Returns register index."""
    if not _is_reg(tok):
        raise ValueError(f"Invalid register: {tok!r}")
    return int(tok.strip()[1], 16)

def _parse_imm(tok: str) -> int:
    """Parse an immediate value (decimal, 0x hex or 0b binary)."""
    return int(tok.strip(), 0)

def _split_ops(rest: str) -> list[str]:
    """Split operand string by comma, trimming whitespace."""
    return [s.strip() for s in rest.split(",") if s.strip()]

def _split_mnemonic(text: str) -> tuple[str, str]:
    """Split 'MNEM operands' → (mnem, operands_str)."""
    parts = text.split(None, 1)
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1]

# ---------------------------------------------------------------------------
#  Assembler
# ---------------------------------------------------------------------------

class AsmError(Exception):
    def __init__(self, line: int, msg: str):
        self.line = line
        super().__init__(f"Line {line}: {msg}")


def assemble(source: str, base_addr: int = PROGRAM_BASE,
             listing: bool = False) -> bytearray:
    """
    Two-pass assembler.
    Pass 1: collect labels, compute sizes.
    Pass 2: emit bytes with resolved addresses.
    If listing=True, print an address/hex/source listing to stdout.
    """
    cleaned: list[tuple[int, str]] = []
    for i, raw in enumerate(source.split("\n"), 1):
        stripped = raw.split(";", 1)[0].strip()
        if stripped:
            cleaned.append((i, stripped))

    # ---- Pass 1: label collection and size computation ----
    labels: dict[str, int] = {}
    sizes: list[tuple[int, str, int]] = []  # (line_no, text, size_bytes)
    pc = base_addr

    for lineno, text in cleaned:
        m = _LABEL_RE.match(text)
        if m:
            lbl, text = m.group(1), m.group(2).strip()
            if lbl in labels:
                raise AsmError(lineno, f"Duplicate label: {lbl}")
            labels[lbl] = pc
            if not text:
                continue

        lower = text.lower()
        try:
            if lower.startswith(".org"):
                target = _parse_imm(text[4:])
                if target < pc:
                    raise AsmError(lineno, f".org {target:#x} moves backwards "
                                           f"from {pc:#x}")
                sizes.append((lineno, text, target - pc))
                pc = target
                continue
            if lower.startswith(".db"):
                sz = len(_split_ops(text[3:]))
            elif lower.startswith(".dw"):
                sz = 2 * len(_split_ops(text[3:]))
            else:
                sz = 2
        except ValueError as e:
            raise AsmError(lineno, str(e)) from None
        sizes.append((lineno, text, sz))
        pc += sz

    # ---- Pass 2: emit bytes ----
    code = bytearray()
    pc = base_addr
    listing_lines = []  # (addr, hex_bytes, source_text)

    for lineno, text, sz in sizes:
        start_pc = pc
        lower = text.lower()
        try:
            if lower.startswith(".org"):
                emitted = bytearray(sz)
            elif lower.startswith(".db"):
                emitted = bytearray(
                    _resolve(tok, labels) & 0xFF for tok in _split_ops(text[3:]))
            elif lower.startswith(".dw"):
                emitted = bytearray()
                for tok in _split_ops(text[3:]):
                    v = _resolve(tok, labels) & 0xFFFF
                    emitted += bytes([(v >> 8) & 0xFF, v & 0xFF])
            else:
                word = _emit_instruction(text, labels)
                emitted = bytearray([(word >> 8) & 0xFF, word & 0xFF])
        except AsmError as e:
            raise AsmError(lineno, str(e).split(": ", 1)[-1]) from None
        except (ValueError, IndexError, KeyError) as e:
            raise AsmError(lineno, f"{e} in {text!r}") from None

        if listing and not lower.startswith(".org"):
            hexstr = " ".join(f"{b:02X}" for b in emitted[:8])
            if len(emitted) > 8:
                hexstr += " ..."
            listing_lines.append((start_pc, hexstr, text))
        code.extend(emitted)
        pc += sz

    if len(code) > 0x1000 - base_addr:
        raise AsmError(0, f"Program is {len(code)} bytes; does not fit "
                          f"above {base_addr:#x}")

    if listing:
        addr_labels: dict[int, list[str]] = {}
        for lbl, addr in labels.items():
            addr_labels.setdefault(addr, []).append(lbl)
        for addr, hexstr, src in listing_lines:
            for lbl in addr_labels.pop(addr, []):
                print(f"              {lbl}:")
            print(f"  {addr:04X}  {hexstr:<24s}  {src}")
        for addr in sorted(addr_labels):
            for lbl in addr_labels[addr]:
                print(f"              {lbl}:")

    return code


# ---------------------------------------------------------------------------
#  Instruction encoding (pass 2)
# ---------------------------------------------------------------------------

def _resolve(tok: str, labels: dict[str, int]) -> int:
    """Resolve a token that is either an immediate or a label reference."""
    tok = tok.strip()
    if tok in labels:
        return labels[tok]
    try:
        return _parse_imm(tok)
    except ValueError:
        raise AsmError(0, f"Unknown label or bad number: {tok!r}") from None


def _addr(tok: str, labels: dict[str, int]) -> int:
    v = _resolve(tok, labels)
    if not 0 <= v <= 0xFFF:
        raise AsmError(0, f"Address {v:#x} does not fit in 12 bits")
    return v


def _byte(tok: str, labels: dict[str, int]) -> int:
    v = _resolve(tok, labels)
    if not -0x80 <= v <= 0xFF:
        raise AsmError(0, f"Value {v} does not fit in a byte")
    return v & 0xFF


def _ld_operand_kind(tok: str) -> str:
    return "v" if _is_reg(tok) else tok.strip().lower()


def _emit_instruction(text: str, labels: dict[str, int]) -> int:
    """Encode one instruction as a 16-bit word."""
    mnem, rest = _split_mnemonic(text)
    m = mnem.lower()
    ops = _split_ops(rest)

    if m == "cls":
        return 0x00E0
    if m == "ret":
        return 0x00EE

    if m == "jp":
        if len(ops) == 2:
            if _parse_reg(ops[0]) != 0:
                raise AsmError(0, "JP with offset only takes V0")
            return 0xB000 | _addr(ops[1], labels)
        return 0x1000 | _addr(ops[0], labels)
    if m == "call":
        return 0x2000 | _addr(ops[0], labels)

    if m in ("se", "sne"):
        x = _parse_reg(ops[0])
        if _is_reg(ops[1]):
            base = 0x5000 if m == "se" else 0x9000
            return base | (x << 8) | (_parse_reg(ops[1]) << 4)
        base = 0x3000 if m == "se" else 0x4000
        return base | (x << 8) | _byte(ops[1], labels)

    if m == "ld":
        dst, src = ops
        kinds = (_ld_operand_kind(dst), _ld_operand_kind(src))
        if kinds in LD_SPECIAL:
            reg = dst if kinds[0] == "v" else src
            return 0xF000 | (_parse_reg(reg) << 8) | LD_SPECIAL[kinds]
        if kinds[0] == "i":
            return 0xA000 | _addr(src, labels)
        x = _parse_reg(dst)
        if kinds[1] == "v":
            return 0x8000 | (x << 8) | (_parse_reg(src) << 4)
        return 0x6000 | (x << 8) | _byte(src, labels)

    if m == "add":
        dst, src = ops
        if dst.strip().lower() == "i":
            return 0xF01E | (_parse_reg(src) << 8)
        x = _parse_reg(dst)
        if _is_reg(src):
            return 0x8004 | (x << 8) | (_parse_reg(src) << 4)
        return 0x7000 | (x << 8) | _byte(src, labels)

    if m in ALU_SUB:
        x = _parse_reg(ops[0])
        if len(ops) > 1:
            y = _parse_reg(ops[1])
        elif m in ("shr", "shl"):
            y = x
        else:
            raise AsmError(0, f"{mnem.upper()} needs two registers")
        return 0x8000 | (x << 8) | (y << 4) | ALU_SUB[m]

    if m == "rnd":
        return 0xC000 | (_parse_reg(ops[0]) << 8) | _byte(ops[1], labels)

    if m == "drw":
        n = _resolve(ops[2], labels)
        if not 0 <= n <= 0xF:
            raise AsmError(0, f"Sprite height {n} out of range 0-15")
        return (0xD000 | (_parse_reg(ops[0]) << 8)
                | (_parse_reg(ops[1]) << 4) | n)

    if m == "skp":
        return 0xE09E | (_parse_reg(ops[0]) << 8)
    if m == "sknp":
        return 0xE0A1 | (_parse_reg(ops[0]) << 8)

    raise AsmError(0, f"Unknown mnemonic: {mnem!r}")
