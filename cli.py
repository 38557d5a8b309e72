#!/usr/bin/env python3
"""
CHIP-8 Monitor / CLI
=====================
Command-line front end for the CHIP-8 interpreter.

Provides:
  - Program loading (raw .ch8 images or .asm source)
  - Windowed play through pygame
  - Headless runs that print the final screen
  - Interactive monitor: step / run / breakpoints, register and memory
    inspection, keypad injection, disassembly

Usage:
  chip8 [PROGRAM] [--display] [--scale N] [--ips N] [--run] [--steps N]
        [--on-unknown raise|halt|skip|log] [--seed N] [--shift-vy]
  chip8 --assemble SRC OUT [--listing]
  chip8 PROGRAM --disasm
"""

from __future__ import annotations
import argparse
import cmd
import logging
import shlex
import sys

from chip8 import (
    Chip8Error, HaltError, UnrecognizedOpcode, MEM_SIZE, NUM_REGS,
    PROGRAM_START, is_glyph_addr, u8, u16,
)
from decoder import decode, format_instruction
from asm import assemble, AsmError
from system import Chip8System, DEFAULT_IPS, UNKNOWN_POLICIES
from devices import TIMER_HZ
from display import render_ascii

DEFAULT_RUN_STEPS = 10_000

# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

def disasm_one(mem: bytearray | bytes, addr: int,
               mem_size: int = MEM_SIZE) -> tuple[str, int]:
    """Disassemble one instruction at `addr`. Returns (text, byte_count)."""
    def rb(a):
        return mem[a % mem_size] if (a % mem_size) < len(mem) else 0

    word = (rb(addr) << 8) | rb(addr + 1)
    try:
        return format_instruction(decode(word, addr)), 2
    except UnrecognizedOpcode:
        return f".dw {word:#06x}", 2


def load_program_path(sys_emu: Chip8System, path: str) -> int:
    """Load a program, assembling it first if it is .asm source."""
    if path.endswith(".asm"):
        with open(path, "r") as f:
            code = assemble(f.read())
        sys_emu.load_program(code)
        return len(code)
    return sys_emu.load_program_file(path)


# ---------------------------------------------------------------------------
#  CLI
# ---------------------------------------------------------------------------

class Chip8CLI(cmd.Cmd):
    """Interactive monitor for the CHIP-8 interpreter."""

    intro = (
        "\n"
        "╔══════════════════════════════════════════════════════════╗\n"
        "║              CHIP-8 Monitor  v1.0                        ║\n"
        "║   Type 'help' for commands.  'quit' to exit.             ║\n"
        "╚══════════════════════════════════════════════════════════╝\n"
    )
    prompt = "CHIP8> "

    def __init__(self, system: Chip8System, stdout=None):
        super().__init__(stdout=stdout)
        self.sys = system
        self.breakpoints: set[int] = set()

    def _print(self, *args):
        print(*args, file=self.stdout)

    # -- Parsing helpers --

    def _parse_addr(self, s: str) -> int:
        """Parse an address (hex with optional 0x prefix, 'pc' or 'i')."""
        s = s.strip().lower()
        if s == "pc":
            return self.sys.cpu.pc
        if s == "i":
            return self.sys.cpu.i
        return int(s, 0)

    def _parse_int(self, s: str) -> int:
        return int(s.strip(), 0)

    # ================================================================
    #  Commands
    # ================================================================

    # -- Loading --

    def do_load(self, arg):
        """Load a program image at 0x200 and reset: load <file>"""
        parts = shlex.split(arg)
        if not parts:
            self._print("Usage: load <file>")
            return
        path = parts[0]
        try:
            size = load_program_path(self.sys, path)
        except (OSError, Chip8Error, AsmError) as e:
            self._print(f"Error: {e}")
            return
        self.sys.reset()
        self._print(f"Loaded {size} bytes from '{path}' at {PROGRAM_START:#x}")

    def do_asm(self, arg):
        """Assemble source and load at 0x200: asm <file.asm>
        Or inline:  asm -e "ld v0, 5; add v0, 1" """
        parts = shlex.split(arg)
        if not parts:
            self._print("Usage: asm <file.asm>  OR  asm -e \"code\"")
            return

        if parts[0] == "-e":
            source = parts[1].replace(";", "\n") if len(parts) > 1 else ""
        else:
            try:
                with open(parts[0], "r") as f:
                    source = f.read()
            except OSError as e:
                self._print(f"Error reading '{parts[0]}': {e}")
                return

        try:
            code = assemble(source)
            self.sys.load_program(code)
        except AsmError as e:
            self._print(f"Assembly error: {e}")
            return
        except Chip8Error as e:
            self._print(f"Error: {e}")
            return
        self.sys.reset()
        self._print(f"Assembled {len(code)} bytes at {PROGRAM_START:#x}")

    def do_reset(self, arg):
        """Reset registers, stack, timers and screen (memory is kept)."""
        self.sys.reset()
        self._print("System reset.")

    # -- Execution --

    def do_step(self, arg):
        """Step N instructions: step [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        for _ in range(count):
            addr_before = self.sys.cpu.pc
            text, _ = disasm_one(self.sys.cpu.mem, addr_before)
            try:
                self.sys.step()
            except HaltError:
                self._print("Machine is halted.")
                break
            except Chip8Error as e:
                self._print(f"Fault: {e}")
                break
            self._print(f"  {addr_before:#05x}: {text}")
            if self.sys.halted:
                self._print(f"Halted: {self.sys.fault}")
                break
            if self.sys.waiting:
                self._print(f"Waiting for key -> V{self.sys.cpu.awaiting_key:X}")
                break

    def do_run(self, arg):
        """Run until halt/key wait/breakpoint: run [max_steps]
        Timers tick once every ips/timer_hz instructions."""
        max_steps = self._parse_int(arg) if arg.strip() else 1_000_000
        per_tick = self.sys.steps_per_tick
        total = 0
        while total < max_steps:
            if self.sys.halted:
                self._print(f"Halted after {total} steps: {self.sys.fault}")
                return
            pc = self.sys.cpu.pc
            if total and pc in self.breakpoints:
                self._print(f"Breakpoint hit at {pc:#05x}")
                return
            try:
                self.sys.step()
            except Chip8Error as e:
                self._print(f"Fault after {total} steps: {e}")
                return
            total += 1
            if total % per_tick == 0:
                self.sys.tick()
            if self.sys.waiting:
                self._print(f"Waiting for key -> V{self.sys.cpu.awaiting_key:X} "
                            f"after {total} steps.")
                self._print("  Use 'key <k>' to press a key, then 'run' to continue.")
                return
        self._print(f"Stopped after {total} steps.")

    # -- Breakpoints --

    def do_bp(self, arg):
        """Set breakpoint: bp <address>"""
        if not arg.strip():
            if self.breakpoints:
                self._print("Breakpoints:")
                for a in sorted(self.breakpoints):
                    self._print(f"  {a:#05x}")
            else:
                self._print("No breakpoints set.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.add(addr)
        self._print(f"Breakpoint set at {addr:#05x}")

    def do_bpd(self, arg):
        """Delete breakpoint: bpd <address|all>"""
        if arg.strip().lower() == "all":
            self.breakpoints.clear()
            self._print("All breakpoints cleared.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.discard(addr)
        self._print(f"Breakpoint at {addr:#05x} removed.")

    # -- Inspection --

    def do_regs(self, arg):
        """Show CPU registers."""
        self._print(self.sys.cpu.dump_regs())
        self._print(f"  Instructions: {self.sys.instructions}  "
                    f"Ticks: {self.sys.ticks}")

    def do_stack(self, arg):
        """Show the call stack, innermost frame first."""
        self._print(self.sys.cpu.dump_stack())

    def do_timers(self, arg):
        """Show delay and sound timers."""
        c = self.sys.cpu
        self._print(f"  DT = {c.delay.value}  ST = {c.sound.value}"
                    f"{'  (buzzing)' if c.sound.active else ''}")

    def do_setreg(self, arg):
        """Set register: setreg <V0-VF|i|pc|dt|st> <value>"""
        parts = shlex.split(arg)
        if len(parts) < 2:
            self._print("Usage: setreg <reg> <value>")
            return
        reg_s = parts[0].lower()
        val = self._parse_int(parts[1])
        c = self.sys.cpu
        if reg_s == "pc":
            c.pc = u16(val)
        elif reg_s == "i":
            c.i = u16(val)
        elif reg_s == "dt":
            c.delay.write(val)
        elif reg_s == "st":
            c.sound.write(val)
        elif len(reg_s) == 2 and reg_s[0] == "v" and reg_s[1] in "0123456789abcdef":
            idx = int(reg_s[1], 16)
            if idx >= NUM_REGS:
                self._print("Register must be V0-VF.")
                return
            c.v[idx] = u8(val)
        else:
            self._print("Unknown register.")
            return
        self._print(f"  {reg_s.upper()} = {val:#x}")

    def do_dump(self, arg):
        """Hex dump memory: dump <address> [count]
        Count defaults to 128 bytes."""
        parts = shlex.split(arg)
        if not parts:
            self._print("Usage: dump <address> [count]")
            return
        addr = self._parse_addr(parts[0])
        count = self._parse_int(parts[1]) if len(parts) > 1 else 128

        for row_start in range(addr, addr + count, 16):
            hex_bytes = []
            ascii_chars = []
            for i in range(16):
                if row_start + i < addr + count:
                    b = self.sys.cpu.mem_read8(row_start + i)
                    hex_bytes.append(f"{b:02x}")
                    ascii_chars.append(chr(b) if 0x20 <= b < 0x7F else '.')
                else:
                    hex_bytes.append("  ")
                    ascii_chars.append(' ')
            hex_str = ' '.join(hex_bytes[:8]) + '  ' + ' '.join(hex_bytes[8:])
            self._print(f"  {row_start % MEM_SIZE:#05x}: {hex_str}  "
                        f"|{''.join(ascii_chars)}|")

    def do_setmem(self, arg):
        """Set memory bytes: setmem <address> <byte> [byte] ...
        The glyph table (0x000-0x04F) is read-only."""
        parts = shlex.split(arg)
        if len(parts) < 2:
            self._print("Usage: setmem <addr> <byte...>")
            return
        addr = self._parse_addr(parts[0])
        written = 0
        for i, tok in enumerate(parts[1:]):
            if is_glyph_addr(addr + i):
                continue
            self.sys.cpu.mem_write8(addr + i, self._parse_int(tok) & 0xFF)
            written += 1
        if written < len(parts) - 1:
            self._print(f"  Skipped {len(parts) - 1 - written} bytes in the "
                        f"glyph table (read-only).")
        self._print(f"  Wrote {written} bytes at {addr:#05x}")

    def do_disasm(self, arg):
        """Disassemble: disasm [address] [count]
        Defaults to current PC, 16 instructions."""
        parts = shlex.split(arg)
        addr = self._parse_addr(parts[0]) if parts else self.sys.cpu.pc
        count = self._parse_int(parts[1]) if len(parts) > 1 else 16

        for _ in range(count):
            text, size = disasm_one(self.sys.cpu.mem, addr)
            raw = ' '.join(f"{self.sys.cpu.mem_read8(addr + i):02x}"
                           for i in range(size))
            marker = ">>>" if addr == self.sys.cpu.pc else "   "
            self._print(f"  {marker} {addr:#05x}: {raw:<6s} {text}")
            addr = (addr + size) % MEM_SIZE

    # -- Keypad / screen --

    def do_key(self, arg):
        """Press or release a hex key: key <0-F> [up]"""
        parts = shlex.split(arg)
        if not parts:
            self._print(f"  Keys down: {self.sys.cpu.keypad.status()}")
            return
        try:
            key = int(parts[0], 16)
            down = not (len(parts) > 1 and parts[1].lower() == "up")
            self.sys.cpu.set_key(key, down)
        except ValueError as e:
            self._print(f"Error: {e}")
            return
        self._print(f"  Key {key:X} {'down' if down else 'up'}")

    def do_screen(self, arg):
        """Print the framebuffer as text."""
        fb = self.sys.cpu.fb
        self._print(render_ascii(fb.pixels, fb.width, fb.height))

    def do_status(self, arg):
        """Show full system status (CPU + devices)."""
        self._print(self.sys.dump_state())

    def do_devices(self, arg):
        """Show device status."""
        for dev in self.sys.cpu.devices:
            self._print(f"  [{dev.name}] {dev.status()}")

    # -- Misc --

    def do_quit(self, arg):
        """Exit the monitor."""
        self._print("Goodbye.")
        return True
    do_exit = do_quit
    do_q = do_quit

    def do_EOF(self, arg):
        self._print()
        return self.do_quit(arg)

    def default(self, line):
        """Handle unknown commands gracefully."""
        self._print(f"Unknown command: {line.split()[0]!r}. "
                    f"Type 'help' for available commands.")

    def emptyline(self):
        """Don't repeat the last command on empty input."""
        pass


# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------

def _run_display(sys_emu: Chip8System, args) -> int:
    try:
        import pygame  # noqa: F401
        from display import FramebufferDisplay
    except ImportError as e:
        print(f"[display] pygame not available: {e}", file=sys.stderr)
        print("[display] Install with: pip install pygame", file=sys.stderr)
        return 1

    display = FramebufferDisplay(sys_emu, scale=args.scale)
    display.start()
    print(f"[display] Window opened (scale={args.scale}x, {sys_emu.ips} ips)")
    status = 0
    try:
        sys_emu.run(stop_event=display.stop_event, max_steps=args.steps)
    except KeyboardInterrupt:
        print()
    except Chip8Error as e:
        print(f"Fault: {e}", file=sys.stderr)
        status = 1
    finally:
        display.stop()
    if sys_emu.halted:
        print(f"Halted: {sys_emu.fault}", file=sys.stderr)
        status = 1
    return status


def _run_headless(sys_emu: Chip8System, steps: int) -> int:
    status = 0
    try:
        while (sys_emu.instructions + sys_emu.skipped_opcodes < steps
               and not sys_emu.halted):
            sys_emu.run_frame()
            if sys_emu.waiting:
                print(f"Waiting for key -> V{sys_emu.cpu.awaiting_key:X}")
                break
    except Chip8Error as e:
        print(f"Fault: {e}", file=sys.stderr)
        status = 1
    if sys_emu.halted:
        print(f"Halted: {sys_emu.fault}", file=sys.stderr)
        status = 1
    fb = sys_emu.cpu.fb
    print(render_ascii(fb.pixels, fb.width, fb.height))
    print(f"{sys_emu.instructions} instructions, {sys_emu.ticks} ticks")
    return status


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="CHIP-8 Interpreter / Monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  chip8 pong.ch8 --display\n"
               "  chip8 pong.ch8 --display --ips 1000 --scale 12\n"
               "  chip8 demo.asm --run --steps 5000\n"
               "  chip8 pong.ch8 --disasm\n"
               "  chip8 --assemble demo.asm demo.ch8 --listing\n"
               "  chip8 pong.ch8                  (interactive monitor)\n"
    )
    parser.add_argument("program", nargs="?", default=None,
                        help="Program image (.ch8) or assembly source (.asm)")
    parser.add_argument("--ips", type=int, default=DEFAULT_IPS,
                        help=f"Instructions per second (default: {DEFAULT_IPS})")
    parser.add_argument("--timer-hz", type=int, default=TIMER_HZ,
                        help=f"Timer tick rate (default: {TIMER_HZ})")
    parser.add_argument("--on-unknown", choices=UNKNOWN_POLICIES,
                        default="raise",
                        help="What to do with unrecognized opcodes (default: raise)")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed for the RND instruction")
    parser.add_argument("--shift-vy", action="store_true",
                        help="SHR/SHL read Vy instead of Vx (COSMAC VIP)")
    parser.add_argument("--display", action="store_true",
                        help="Open a pygame window and run the program")
    parser.add_argument("--scale", type=int, default=10, metavar="N",
                        help="Pixel scale factor for display window (default: 10)")
    parser.add_argument("--run", action="store_true",
                        help="Run headless, then print the screen")
    parser.add_argument("--steps", type=int, default=None, metavar="N",
                        help="Instruction limit for --run / --display "
                             f"(--run default: {DEFAULT_RUN_STEPS})")
    parser.add_argument("--disasm", action="store_true",
                        help="Disassemble the program and exit")
    parser.add_argument("--assemble", nargs=2, metavar=("SRC", "OUT"),
                        help="Assemble SRC.asm to OUT.ch8 and exit")
    parser.add_argument("--listing", "-l", action="store_true",
                        help="Print assembly listing (with --assemble)")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s")

    # ---- Assemble-only mode -------------------------------------------
    if args.assemble:
        src_path, out_path = args.assemble
        with open(src_path, "r") as f:
            source = f.read()
        try:
            code = assemble(source, listing=args.listing)
        except AsmError as e:
            print(f"Assembly error: {e}", file=sys.stderr)
            return 1
        with open(out_path, "wb") as f:
            f.write(code)
        print(f"Assembled {src_path} → {out_path} ({len(code)} bytes)")
        return 0

    try:
        sys_emu = Chip8System(
            ips=args.ips,
            timer_hz=args.timer_hz,
            on_unknown=args.on_unknown,
            seed=args.seed,
            shift_vy=args.shift_vy,
        )
    except ValueError as e:
        parser.error(str(e))

    size = 0
    if args.program:
        try:
            size = load_program_path(sys_emu, args.program)
        except (OSError, Chip8Error) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        except AsmError as e:
            print(f"Assembly error: {e}", file=sys.stderr)
            return 1
        print(f"Loaded {size} bytes from '{args.program}' at {PROGRAM_START:#x}")

    if args.disasm:
        if not args.program:
            parser.error("--disasm needs a program")
        addr = PROGRAM_START
        while addr < PROGRAM_START + size:
            text, n = disasm_one(sys_emu.cpu.mem, addr)
            print(f"  {addr:#05x}: {sys_emu.cpu.mem_read16(addr):04x}  {text}")
            addr += n
        return 0

    if args.display:
        if not args.program:
            parser.error("--display needs a program")
        return _run_display(sys_emu, args)

    if args.run:
        if not args.program:
            parser.error("--run needs a program")
        steps = args.steps if args.steps is not None else DEFAULT_RUN_STEPS
        return _run_headless(sys_emu, steps)

    cli = Chip8CLI(sys_emu)
    try:
        cli.cmdloop()
    except KeyboardInterrupt:
        print("\nInterrupted. Goodbye.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
