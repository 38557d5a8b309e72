"""
CHIP-8 System Emulator
=======================
Wires together:
  - the Chip8 interpreter core (chip8.py)
  - the 60 Hz timer tick, decoupled from the instruction rate
  - the host policy for unrecognized opcodes

The core never decides what to do with a word it cannot decode; the
system does, according to ``on_unknown``:

  raise  — propagate UnrecognizedOpcode to the caller
  halt   — stop the machine and remember the fault
  skip   — step over the word silently
  log    — log a warning, then step over the word

Stack faults always propagate.
"""

from __future__ import annotations
import logging
import threading
import time
from typing import Callable, Optional

from chip8 import Chip8, HaltError, UnrecognizedOpcode, Chip8Error, u16
from devices import TIMER_HZ

logger = logging.getLogger(__name__)

DEFAULT_IPS = 600
UNKNOWN_POLICIES = ("raise", "halt", "skip", "log")

# Longest stretch of wall-clock time advance() will try to catch up on.
# Anything beyond (debugger pause, suspended laptop) is dropped.
MAX_CATCHUP_S = 0.25


class Chip8System:
    """Tick driver around one Chip8 core."""

    def __init__(self, ips: int = DEFAULT_IPS, timer_hz: int = TIMER_HZ,
                 on_unknown: str = "raise", seed: Optional[int] = None,
                 shift_vy: bool = False,
                 clock: Callable[[], float] = time.monotonic):
        if ips <= 0:
            raise ValueError(f"ips must be positive, got {ips}")
        if timer_hz <= 0:
            raise ValueError(f"timer_hz must be positive, got {timer_hz}")
        if on_unknown not in UNKNOWN_POLICIES:
            raise ValueError(f"on_unknown must be one of {UNKNOWN_POLICIES}, "
                             f"got {on_unknown!r}")
        self.cpu = Chip8(seed=seed, shift_vy=shift_vy)
        self.ips = ips
        self.timer_hz = timer_hz
        self.on_unknown = on_unknown
        self.clock = clock

        self.halted: bool = False
        self.fault: Optional[Chip8Error] = None
        self.instructions: int = 0
        self.ticks: int = 0
        self.skipped_opcodes: int = 0

        # Fractional carry-over for advance()
        self._step_acc: float = 0.0
        self._tick_acc: float = 0.0

    # -----------------------------------------------------------------
    #  Loading
    # -----------------------------------------------------------------

    def load_program(self, data: bytes | bytearray):
        self.cpu.load_program(data)

    def load_program_file(self, path: str) -> int:
        """Load a program image from disk.  Returns its size in bytes."""
        with open(path, "rb") as f:
            data = f.read()
        self.load_program(data)
        return len(data)

    def reset(self):
        """CPU reset (memory and program are kept)."""
        self.cpu.reset()
        self.halted = False
        self.fault = None
        self.instructions = 0
        self.ticks = 0
        self.skipped_opcodes = 0
        self._step_acc = 0.0
        self._tick_acc = 0.0

    # -----------------------------------------------------------------
    #  Stepping
    # -----------------------------------------------------------------

    @property
    def steps_per_tick(self) -> int:
        return max(1, self.ips // self.timer_hz)

    @property
    def waiting(self) -> bool:
        return self.cpu.awaiting_key is not None

    def step(self) -> bool:
        """Execute one instruction.  Returns True if the framebuffer changed."""
        if self.halted:
            raise HaltError("Machine is halted")
        before = self.cpu.cycle_count
        try:
            redraw = self.cpu.step()
        except UnrecognizedOpcode as e:
            return self._handle_unknown(e)
        self.instructions += self.cpu.cycle_count - before
        return redraw

    def _handle_unknown(self, e: UnrecognizedOpcode) -> bool:
        if self.on_unknown == "raise":
            raise e
        if self.on_unknown == "halt":
            self.halted = True
            self.fault = e
            return False
        if self.on_unknown == "log":
            logger.warning("%s; skipping", e)
        self.skipped_opcodes += 1
        self.cpu.pc = u16(e.address + 2)
        return False

    def tick(self):
        """Advance the timer subsystem by one fixed interval."""
        self.cpu.tick_timers(1)
        self.ticks += 1

    def run_frame(self) -> bool:
        """Run one timer period's worth of instructions, then tick once.

        Stops stepping early when the machine halts or parks on a
        wait-for-key; the tick still happens.  Returns True if any
        instruction changed the framebuffer.
        """
        redraw = False
        for _ in range(self.steps_per_tick):
            if self.halted:
                break
            redraw |= self.step()
            if self.waiting:
                break
        self.tick()
        return redraw

    def advance(self, elapsed: float,
                max_steps: Optional[int] = None) -> bool:
        """Catch up *elapsed* seconds of machine time.

        Instructions run at ``ips`` and timer ticks at ``timer_hz``,
        interleaved in time order.  Fractional remainders carry over to the
        next call so the long-run rates stay exact.  At most *max_steps*
        instructions run; any beyond that are dropped, ticks are not.
        """
        elapsed = min(max(elapsed, 0.0), MAX_CATCHUP_S)
        self._step_acc += elapsed * self.ips
        self._tick_acc += elapsed * self.timer_hz
        steps = int(self._step_acc)
        ticks = int(self._tick_acc)
        self._step_acc -= steps
        self._tick_acc -= ticks
        if max_steps is not None and steps > max_steps:
            steps = max(0, max_steps)

        redraw = False
        done_steps = 0
        for t in range(1, ticks + 1):
            # Steps that fall before the t-th tick
            due = steps * t // ticks
            while done_steps < due:
                if not self.halted:
                    redraw |= self.step()
                done_steps += 1
            self.tick()
        while done_steps < steps:
            if not self.halted:
                redraw |= self.step()
            done_steps += 1
        return redraw

    def run(self, stop_event: Optional[threading.Event] = None,
            max_steps: Optional[int] = None,
            on_frame: Optional[Callable[["Chip8System"], None]] = None) -> int:
        """Real-time run loop.

        Runs until halted, until *stop_event* is set, or until exactly
        *max_steps* instructions (skipped words included) have executed.
        *on_frame* is called once per timer period.  Returns the number of
        instructions executed.
        """
        start = self.instructions
        start_skipped = self.skipped_opcodes
        period = 1.0 / self.timer_hz
        last = self.clock()
        while not self.halted:
            if stop_event is not None and stop_event.is_set():
                break
            # Skipped words count toward max_steps too
            taken = (self.instructions - start
                     + self.skipped_opcodes - start_skipped)
            if max_steps is not None and taken >= max_steps:
                break
            now = self.clock()
            remaining = None if max_steps is None else max_steps - taken
            self.advance(now - last, remaining)
            last = now
            if on_frame is not None:
                on_frame(self)
            spare = period - (self.clock() - now)
            if spare > 0:
                time.sleep(spare)
        return self.instructions - start

    # -----------------------------------------------------------------
    #  Introspection
    # -----------------------------------------------------------------

    def dump_state(self) -> str:
        lines = ["CPU:", self.cpu.dump_regs(),
                 f"  Instructions: {self.instructions}  Ticks: {self.ticks}  "
                 f"Skipped: {self.skipped_opcodes}"]
        if self.halted:
            lines.append(f"  HALTED: {self.fault}")
        lines.append("Devices:")
        for dev in self.cpu.devices:
            lines.append(f"  [{dev.name}] {dev.status()}")
        return "\n".join(lines)
