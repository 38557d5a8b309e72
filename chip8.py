"""
CHIP-8 Interpreter Core
========================
Fetch/decode/execute engine for the CHIP-8 virtual machine together with
the state it owns: 4 KiB of memory, sixteen 8-bit V registers, the index
register, the call stack, the delay/sound timers, the framebuffer and the
keypad latch.

Memory map:

  0x000 – 0x04F  built-in hex glyphs (16 × 5 bytes)
  0x050 – 0x1FF  interpreter area (writable, unused by the core)
  0x200 – 0xFFF  program / data

One call to step() runs one instruction.  Timers are NOT advanced by
step(); the driver (system.py) calls tick_timers() at 60 Hz independent of
how many instructions ran in between.
"""

from __future__ import annotations
import random
from typing import Optional

from decoder import Chip8Error, UnrecognizedOpcode, Instruction, Op, decode
from devices import CountdownTimer, Keypad, Framebuffer

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MEM_SIZE      = 4096
PROGRAM_START = 0x200
MAX_PROGRAM   = MEM_SIZE - PROGRAM_START
STACK_SIZE    = 16
NUM_REGS      = 16
VF            = 0xF
GLYPH_ADDR    = 0x000
GLYPH_BYTES   = 5

GLYPHS = bytes([
    0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
    0x20, 0x60, 0x20, 0x20, 0x70,  # 1
    0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
    0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
    0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
    0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
    0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
    0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
    0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
    0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
    0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
    0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
    0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
    0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
    0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
    0xF0, 0x80, 0xF0, 0x80, 0x80,  # F
])

# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def u8(v: int) -> int:
    """Mask to unsigned 8 bits."""
    return v & 0xFF

def u16(v: int) -> int:
    """Mask to unsigned 16 bits."""
    return v & 0xFFFF

def bcd(value: int) -> tuple[int, int, int]:
    """Split a byte into (hundreds, tens, ones)."""
    return value // 100, (value // 10) % 10, value % 10

def is_glyph_addr(addr: int) -> bool:
    """True if *addr* (mod 4096) falls inside the built-in glyph table."""
    return GLYPH_ADDR <= addr % MEM_SIZE < GLYPH_ADDR + len(GLYPHS)

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class ProgramTooLarge(Chip8Error):
    def __init__(self, size: int, capacity: int = MAX_PROGRAM):
        self.size = size
        self.capacity = capacity
        super().__init__(
            f"Program is {size} bytes; only {capacity} fit at {PROGRAM_START:#x}")

class StackError(Chip8Error):
    def __init__(self, address: int, message: str):
        self.address = address
        super().__init__(f"{message} @ {address:#05x}")

class StackOverflow(StackError):
    def __init__(self, address: int):
        super().__init__(address, "Stack overflow")

class StackUnderflow(StackError):
    def __init__(self, address: int):
        super().__init__(address, "Stack underflow")

class HaltError(Chip8Error):
    pass

# ---------------------------------------------------------------------------
#  CPU
# ---------------------------------------------------------------------------

class Chip8:
    """CHIP-8 interpreter — state store plus executor."""

    def __init__(self, seed: Optional[int] = None, shift_vy: bool = False):
        self.mem = bytearray(MEM_SIZE)
        self.mem[GLYPH_ADDR:GLYPH_ADDR + len(GLYPHS)] = GLYPHS

        # 16 × 8-bit V registers; VF doubles as the flag output
        self.v: list[int] = [0] * NUM_REGS
        self.i: int = 0
        self.pc: int = PROGRAM_START

        # Call stack; slot 0 is never an active frame (pre-increment push)
        self.stack: list[int] = [0] * STACK_SIZE
        self.sp: int = 0

        # Devices
        self.delay = CountdownTimer("Delay")
        self.sound = CountdownTimer("Sound")
        self.keypad = Keypad()
        self.fb = Framebuffer()
        self.devices = [self.delay, self.sound, self.keypad, self.fb]

        # Wait-for-key state: register index while suspended, else None
        self.awaiting_key: Optional[int] = None

        # 8xy6 / 8xyE read Vy instead of Vx (COSMAC VIP behaviour)
        self.shift_vy = shift_vy
        self.rng = random.Random(seed)
        self.cycle_count: int = 0

        self._dispatch = {
            Op.CLS:       self._exec_cls,
            Op.RET:       self._exec_ret,
            Op.JP:        self._exec_jp,
            Op.CALL:      self._exec_call,
            Op.SE_IMM:    self._exec_se_imm,
            Op.SNE_IMM:   self._exec_sne_imm,
            Op.SE_REG:    self._exec_se_reg,
            Op.LD_IMM:    self._exec_ld_imm,
            Op.ADD_IMM:   self._exec_add_imm,
            Op.LD_REG:    self._exec_alu,
            Op.OR:        self._exec_alu,
            Op.AND:       self._exec_alu,
            Op.XOR:       self._exec_alu,
            Op.ADD_REG:   self._exec_alu,
            Op.SUB:       self._exec_alu,
            Op.SHR:       self._exec_alu,
            Op.SUBN:      self._exec_alu,
            Op.SHL:       self._exec_alu,
            Op.SNE_REG:   self._exec_sne_reg,
            Op.LD_I:      self._exec_ld_i,
            Op.JP_V0:     self._exec_jp_v0,
            Op.RND:       self._exec_rnd,
            Op.DRW:       self._exec_drw,
            Op.SKP:       self._exec_skp,
            Op.SKNP:      self._exec_sknp,
            Op.LD_VX_DT:  self._exec_ld_vx_dt,
            Op.LD_VX_K:   self._exec_ld_vx_k,
            Op.LD_DT_VX:  self._exec_ld_dt_vx,
            Op.LD_ST_VX:  self._exec_ld_st_vx,
            Op.ADD_I:     self._exec_add_i,
            Op.LD_F:      self._exec_ld_f,
            Op.LD_B:      self._exec_ld_b,
            Op.LD_MEM_VX: self._exec_ld_mem_vx,
            Op.LD_VX_MEM: self._exec_ld_vx_mem,
        }

    # -- Memory access --

    def mem_read8(self, addr: int) -> int:
        return self.mem[addr % MEM_SIZE]

    def mem_write8(self, addr: int, val: int) -> None:
        """Store one byte.  Writes into the glyph table are dropped."""
        addr %= MEM_SIZE
        if is_glyph_addr(addr):
            return
        self.mem[addr] = val & 0xFF

    def mem_read16(self, addr: int) -> int:
        """Big-endian instruction word."""
        return (self.mem_read8(addr) << 8) | self.mem_read8(addr + 1)

    # -- Program loading --

    def load_program(self, data: bytes | bytearray):
        """Copy a program image to 0x200, leaving the rest of memory alone."""
        if len(data) > MAX_PROGRAM:
            raise ProgramTooLarge(len(data))
        self.mem[PROGRAM_START:PROGRAM_START + len(data)] = data

    # -- Stack helpers --

    def push(self, addr: int, fault_pc: int):
        if self.sp >= STACK_SIZE - 1:
            raise StackOverflow(fault_pc)
        self.sp += 1
        self.stack[self.sp] = u16(addr)

    def pop(self, fault_pc: int) -> int:
        if self.sp == 0:
            raise StackUnderflow(fault_pc)
        addr = self.stack[self.sp]
        self.sp -= 1
        return addr

    # -- Host-facing I/O --

    def press_key(self, key: int):
        self.keypad.press(key)

    def release_key(self, key: int):
        self.keypad.release(key)

    def set_key(self, key: int, down: bool):
        self.keypad.set(key, down)

    def read_framebuffer(self) -> tuple[bytes, bool]:
        return self.fb.read()

    def tick_timers(self, ticks: int = 1):
        """Advance delay and sound timers by N 60 Hz ticks."""
        self.delay.tick(ticks)
        self.sound.tick(ticks)

    # =====================================================================
    #  STEP: the core decode/execute loop
    # =====================================================================

    def fetch(self) -> int:
        return self.mem_read16(self.pc)

    def step(self) -> bool:
        """Execute one instruction.  Returns True if the framebuffer changed.

        While suspended on a wait-for-key instruction, a step with no key
        down makes no progress and leaves PC where it is.
        """
        if self.awaiting_key is not None:
            return self._resume_key_wait()

        addr = self.pc
        ins = decode(self.fetch(), addr)
        self.pc = u16(addr + 2)
        try:
            redraw = self.execute(ins)
        except StackError:
            self.pc = addr
            raise
        if self.awaiting_key is None:
            self.cycle_count += 1
        return redraw

    def execute(self, ins: Instruction) -> bool:
        """Apply one decoded instruction.  PC already points past it."""
        return bool(self._dispatch[ins.op](ins))

    def _skip_if(self, cond: bool):
        if cond:
            self.pc = u16(self.pc + 2)

    def _resume_key_wait(self) -> bool:
        key = self.keypad.first_pressed()
        if key is None:
            return False
        self.v[self.awaiting_key] = key
        self.awaiting_key = None
        self.pc = u16(self.pc + 2)
        self.cycle_count += 1
        return False

    # =====================================================================
    #  Instruction executors
    # =====================================================================

    # -- 0x0: CLS / RET --
    def _exec_cls(self, ins: Instruction) -> bool:
        self.fb.clear()
        return True

    def _exec_ret(self, ins: Instruction) -> bool:
        # The pushed address already points past the CALL
        self.pc = self.pop(u16(self.pc - 2))
        return False

    # -- 0x1 / 0x2: JP / CALL --
    def _exec_jp(self, ins: Instruction) -> bool:
        self.pc = ins.nnn
        return False

    def _exec_call(self, ins: Instruction) -> bool:
        self.push(self.pc, u16(self.pc - 2))
        self.pc = ins.nnn
        return False

    # -- 0x3 / 0x4 / 0x5 / 0x9: conditional skips --
    def _exec_se_imm(self, ins: Instruction) -> bool:
        self._skip_if(self.v[ins.x] == ins.kk)
        return False

    def _exec_sne_imm(self, ins: Instruction) -> bool:
        self._skip_if(self.v[ins.x] != ins.kk)
        return False

    def _exec_se_reg(self, ins: Instruction) -> bool:
        self._skip_if(self.v[ins.x] == self.v[ins.y])
        return False

    def _exec_sne_reg(self, ins: Instruction) -> bool:
        self._skip_if(self.v[ins.x] != self.v[ins.y])
        return False

    # -- 0x6 / 0x7: immediates --
    def _exec_ld_imm(self, ins: Instruction) -> bool:
        self.v[ins.x] = ins.kk
        return False

    def _exec_add_imm(self, ins: Instruction) -> bool:
        self.v[ins.x] = u8(self.v[ins.x] + ins.kk)  # VF untouched
        return False

    # -- 0x8: ALU --
    def _exec_alu(self, ins: Instruction) -> bool:
        op = ins.op
        a = self.v[ins.x]
        b = self.v[ins.y]
        flag = None

        if op is Op.LD_REG:
            r = b
        elif op is Op.OR:
            r = a | b
        elif op is Op.AND:
            r = a & b
        elif op is Op.XOR:
            r = a ^ b
        elif op is Op.ADD_REG:
            total = a + b
            r = u8(total)
            flag = 1 if total > 0xFF else 0
        elif op is Op.SUB:
            r = u8(a - b)
            flag = 1 if a >= b else 0
        elif op is Op.SUBN:
            r = u8(b - a)
            flag = 1 if b >= a else 0
        elif op is Op.SHR:
            src = b if self.shift_vy else a
            r = src >> 1
            flag = src & 1
        else:  # Op.SHL
            src = b if self.shift_vy else a
            r = u8(src << 1)
            flag = (src >> 7) & 1

        # Flag is computed from pre-op values and written last, so it
        # survives when the destination is VF itself.
        self.v[ins.x] = r
        if flag is not None:
            self.v[VF] = flag
        return False

    # -- 0xA / 0xB / 0xC --
    def _exec_ld_i(self, ins: Instruction) -> bool:
        self.i = ins.nnn
        return False

    def _exec_jp_v0(self, ins: Instruction) -> bool:
        self.pc = u16(ins.nnn + self.v[0])
        return False

    def _exec_rnd(self, ins: Instruction) -> bool:
        self.v[ins.x] = self.rng.randrange(256) & ins.kk
        return False

    # -- 0xD: DRW --
    def _exec_drw(self, ins: Instruction) -> bool:
        rows = bytes(self.mem_read8(self.i + r) for r in range(ins.n))
        hit = self.fb.draw_sprite(self.v[ins.x], self.v[ins.y], rows)
        self.v[VF] = 1 if hit else 0
        return True

    # -- 0xE: keypad skips --
    def _exec_skp(self, ins: Instruction) -> bool:
        self._skip_if(self.keypad.is_pressed(self.v[ins.x]))
        return False

    def _exec_sknp(self, ins: Instruction) -> bool:
        self._skip_if(not self.keypad.is_pressed(self.v[ins.x]))
        return False

    # -- 0xF: timers, keys, index, memory --
    def _exec_ld_vx_dt(self, ins: Instruction) -> bool:
        self.v[ins.x] = self.delay.value
        return False

    def _exec_ld_vx_k(self, ins: Instruction) -> bool:
        key = self.keypad.first_pressed()
        if key is not None:
            self.v[ins.x] = key
            return False
        # Suspend: park PC on this instruction until a key goes down
        self.awaiting_key = ins.x
        self.pc = u16(self.pc - 2)
        return False

    def _exec_ld_dt_vx(self, ins: Instruction) -> bool:
        self.delay.write(self.v[ins.x])
        return False

    def _exec_ld_st_vx(self, ins: Instruction) -> bool:
        self.sound.write(self.v[ins.x])
        return False

    def _exec_add_i(self, ins: Instruction) -> bool:
        self.i = u16(self.i + self.v[ins.x])
        return False

    def _exec_ld_f(self, ins: Instruction) -> bool:
        self.i = u16(GLYPH_ADDR + self.v[ins.x] * GLYPH_BYTES)
        return False

    def _exec_ld_b(self, ins: Instruction) -> bool:
        for k, digit in enumerate(bcd(self.v[ins.x])):
            self.mem_write8(self.i + k, digit)
        return False

    def _exec_ld_mem_vx(self, ins: Instruction) -> bool:
        for k in range(ins.x + 1):
            self.mem_write8(self.i + k, self.v[k])
        return False

    def _exec_ld_vx_mem(self, ins: Instruction) -> bool:
        for k in range(ins.x + 1):
            self.v[k] = self.mem_read8(self.i + k)
        return False

    # -- Reset helper --
    def reset(self):
        """Power-on register/stack/timer/display state.  Memory is kept."""
        self.v = [0] * NUM_REGS
        self.i = 0
        self.pc = PROGRAM_START
        self.stack = [0] * STACK_SIZE
        self.sp = 0
        self.awaiting_key = None
        self.cycle_count = 0
        for dev in self.devices:
            dev.reset()

    # -- Debug / introspection --

    def dump_regs(self) -> str:
        lines = []
        for row in range(0, NUM_REGS, 4):
            lines.append("  " + "  ".join(
                f"V{k:X} = {self.v[k]:#04x}" for k in range(row, row + 4)))
        lines.append(f"  I = {self.i:#06x}  PC = {self.pc:#06x}  SP = {self.sp}")
        lines.append(f"  DT = {self.delay.value}  ST = {self.sound.value}")
        if self.awaiting_key is not None:
            lines.append(f"  Waiting for key -> V{self.awaiting_key:X}")
        return "\n".join(lines)

    def dump_stack(self) -> str:
        if self.sp == 0:
            return "  (empty)"
        return "\n".join(f"  [{k:2d}] {self.stack[k]:#06x}"
                         for k in range(self.sp, 0, -1))
