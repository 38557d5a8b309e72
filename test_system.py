#!/usr/bin/env python3
"""
Integration tests for the CHIP-8 system.

Tests the layers around the interpreter core: devices, the tick driver and
its unknown-opcode policies, rate limiting, the display helpers, and the
CLI monitor.

Run with:  python -m pytest test_system.py
"""
import contextlib
import io
import logging
import os
import tempfile
import threading
import unittest

import numpy as np
import pytest

from chip8 import GLYPHS, HaltError, StackUnderflow, UnrecognizedOpcode
from asm import assemble
from system import Chip8System, MAX_CATCHUP_S
from devices import CountdownTimer, Keypad, Framebuffer
from display import (
    KEYMAP, HeadlessDisplay, FramebufferDisplay, pixels_to_rgb, render_ascii,
)
from cli import Chip8CLI, disasm_one, main

os.environ.setdefault("SDL_VIDEODRIVER", "dummy")


# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def words(*ws: int) -> bytes:
    return b"".join(w.to_bytes(2, "big") for w in ws)


def make_system(*ws: int, **kw) -> Chip8System:
    s = Chip8System(**kw)
    s.load_program(words(*ws))
    return s


class FakeClock:
    """Monotonic clock that advances a fixed amount per reading."""

    def __init__(self, step: float):
        self.t = 0.0
        self.step = step

    def __call__(self) -> float:
        t = self.t
        self.t += self.step
        return t


def make_cli(system: Chip8System | None = None) -> tuple[Chip8CLI, io.StringIO]:
    out = io.StringIO()
    return Chip8CLI(system or Chip8System(), stdout=out), out


# =========================================================================
#  Devices
# =========================================================================

class TestCountdownTimer(unittest.TestCase):
    def test_write_masks(self):
        t = CountdownTimer("Delay")
        t.write(0x1FF)
        self.assertEqual(t.value, 0xFF)

    def test_tick_saturates(self):
        t = CountdownTimer("Sound")
        t.write(3)
        t.tick()
        self.assertEqual(t.value, 2)
        self.assertTrue(t.active)
        t.tick(10)
        self.assertEqual(t.value, 0)
        self.assertFalse(t.active)
        t.tick(0)
        self.assertEqual(t.value, 0)

    def test_reset(self):
        t = CountdownTimer("Delay")
        t.write(9)
        t.reset()
        self.assertEqual(t.value, 0)


class TestKeypad(unittest.TestCase):
    def test_press_release(self):
        k = Keypad()
        k.press(0xA)
        self.assertTrue(k.is_pressed(0xA))
        self.assertEqual(k.status(), "A")
        k.release(0xA)
        self.assertFalse(k.is_pressed(0xA))
        self.assertEqual(k.status(), "-")

    def test_first_pressed_is_lowest(self):
        k = Keypad()
        self.assertIsNone(k.first_pressed())
        k.set(9, True)
        k.set(4, True)
        self.assertEqual(k.first_pressed(), 4)
        k.release_all()
        self.assertIsNone(k.first_pressed())

    def test_range_checked(self):
        k = Keypad()
        for bad in (-1, 16, 0x100):
            with self.assertRaises(ValueError):
                k.press(bad)


class TestFramebuffer(unittest.TestCase):
    def test_xor_and_collision(self):
        fb = Framebuffer()
        self.assertFalse(fb.draw_sprite(0, 0, b"\xC0"))
        self.assertEqual((fb.pixel(0, 0), fb.pixel(1, 0)), (1, 1))
        self.assertTrue(fb.draw_sprite(1, 0, b"\x80"))
        self.assertEqual(fb.pixel(1, 0), 0)
        self.assertEqual(fb.pixel(0, 0), 1)

    def test_wrap(self):
        fb = Framebuffer()
        fb.draw_sprite(63, 31, b"\xC0\xC0")
        lit = {(x, y) for y in range(32) for x in range(64) if fb.pixel(x, y)}
        self.assertEqual(lit, {(63, 31), (0, 31), (63, 0), (0, 0)})

    def test_clear_and_dirty(self):
        fb = Framebuffer()
        self.assertFalse(fb.read()[1])
        fb.draw_sprite(0, 0, b"\xFF")
        pixels, dirty = fb.read()
        self.assertTrue(dirty)
        self.assertEqual(sum(pixels), 8)
        fb.clear()
        pixels, dirty = fb.read()
        self.assertTrue(dirty)
        self.assertEqual(sum(pixels), 0)

    def test_reset_marks_dirty(self):
        fb = Framebuffer()
        fb.read()
        fb.reset()
        self.assertTrue(fb.dirty)


# =========================================================================
#  System driver
# =========================================================================

class TestSystemConfig(unittest.TestCase):
    def test_defaults(self):
        s = Chip8System()
        self.assertEqual(s.ips, 600)
        self.assertEqual(s.timer_hz, 60)
        self.assertEqual(s.steps_per_tick, 10)

    def test_rejects_bad_arguments(self):
        with self.assertRaises(ValueError):
            Chip8System(ips=0)
        with self.assertRaises(ValueError):
            Chip8System(timer_hz=-1)
        with self.assertRaises(ValueError):
            Chip8System(on_unknown="ignore")

    def test_slow_ips_still_steps(self):
        self.assertEqual(Chip8System(ips=30).steps_per_tick, 1)

    def test_load_program_file(self):
        with tempfile.TemporaryDirectory() as d:
            path = os.path.join(d, "prog.ch8")
            with open(path, "wb") as f:
                f.write(words(0x6042, 0x1202))
            s = Chip8System()
            self.assertEqual(s.load_program_file(path), 4)
        s.step()
        self.assertEqual(s.cpu.v[0], 0x42)

    def test_reset(self):
        s = make_system(0x6042, 0x0000, on_unknown="halt")
        s.step()
        s.step()
        self.assertTrue(s.halted)
        s.reset()
        self.assertFalse(s.halted)
        self.assertIsNone(s.fault)
        self.assertEqual(s.instructions, 0)
        self.assertEqual(s.cpu.pc, 0x200)
        self.assertEqual(s.cpu.mem_read16(0x200), 0x6042)

    def test_dump_state(self):
        s = make_system(0x0000, on_unknown="halt")
        s.step()
        text = s.dump_state()
        self.assertIn("PC = 0x0200", text)
        self.assertIn("[Keypad]", text)
        self.assertIn("HALTED", text)


class TestUnknownPolicies(unittest.TestCase):
    def test_raise(self):
        s = make_system(0x0123)
        with self.assertRaises(UnrecognizedOpcode):
            s.step()
        self.assertEqual(s.cpu.pc, 0x200)
        self.assertFalse(s.halted)

    def test_halt(self):
        s = make_system(0x0123, on_unknown="halt")
        self.assertFalse(s.step())
        self.assertTrue(s.halted)
        self.assertIsInstance(s.fault, UnrecognizedOpcode)
        self.assertEqual(s.fault.address, 0x200)
        with self.assertRaises(HaltError):
            s.step()

    def test_skip(self):
        s = make_system(0x0123, 0x6007, on_unknown="skip")
        s.step()
        self.assertEqual(s.cpu.pc, 0x202)
        self.assertEqual(s.skipped_opcodes, 1)
        s.step()
        self.assertEqual(s.cpu.v[0], 7)

    def test_log(self):
        s = make_system(0x0123, on_unknown="log")
        with self.assertLogs("system", level="WARNING") as cm:
            s.step()
        self.assertIn("0x0123", cm.output[0])
        self.assertEqual(s.cpu.pc, 0x202)

    def test_stack_faults_always_propagate(self):
        s = make_system(0x00EE, on_unknown="skip")
        with self.assertRaises(StackUnderflow):
            s.step()
        self.assertFalse(s.halted)


class TestRateLimiting(unittest.TestCase):
    def test_run_frame(self):
        s = make_system(0x7001, 0x1200)
        s.run_frame()
        self.assertEqual(s.instructions, 10)
        self.assertEqual(s.ticks, 1)
        self.assertEqual(s.cpu.v[0], 5)

    def test_run_frame_ticks_timers(self):
        s = make_system(0x6003, 0xF015, 0x1204)
        s.run_frame()
        self.assertEqual(s.cpu.delay.value, 2)
        s.run_frame()
        s.run_frame()
        s.run_frame()
        self.assertEqual(s.cpu.delay.value, 0)

    def test_run_frame_reports_redraw(self):
        self.assertTrue(make_system(0xD015, 0x1202).run_frame())
        self.assertFalse(make_system(0x1200).run_frame())

    def test_run_frame_stops_on_key_wait(self):
        s = make_system(0xF00A, 0x1202)
        s.run_frame()
        self.assertTrue(s.waiting)
        self.assertEqual(s.instructions, 0)
        self.assertEqual(s.ticks, 1)
        s.cpu.press_key(6)
        s.run_frame()
        self.assertFalse(s.waiting)
        self.assertEqual(s.cpu.v[0], 6)
        self.assertEqual(s.instructions, 10)

    def test_run_frame_when_halted(self):
        s = make_system(0x0000, on_unknown="halt")
        s.run_frame()
        s.run_frame()
        self.assertTrue(s.halted)
        self.assertEqual(s.ticks, 2)

    def test_advance_interleaves(self):
        s = make_system(0x1200)
        events = []
        step, tick = s.step, s.tick
        s.step = lambda: (events.append("s"), step())[1]
        s.tick = lambda: (events.append("t"), tick())[1]
        s.advance(0.25)
        self.assertEqual(events, (["s"] * 10 + ["t"]) * 15)

    def test_advance_carries_fractions(self):
        s = make_system(0x1200)
        s.advance(0.125)
        self.assertEqual((s.instructions, s.ticks), (75, 7))
        s.advance(0.125)
        self.assertEqual((s.instructions, s.ticks), (150, 15))

    def test_advance_clamps(self):
        s = make_system(0x1200)
        s.advance(10.0)
        self.assertEqual(s.instructions, int(MAX_CATCHUP_S * 600))
        s.advance(-1.0)
        self.assertEqual(s.instructions, int(MAX_CATCHUP_S * 600))

    def test_run_max_steps(self):
        s = make_system(0x1200, clock=FakeClock(0.25))
        frames = []
        ran = s.run(max_steps=300, on_frame=frames.append)
        self.assertEqual(ran, 300)
        self.assertEqual(len(frames), 2)
        self.assertIs(frames[0], s)

    def test_run_stops_at_exact_budget(self):
        s = make_system(0x1200, clock=FakeClock(0.25))
        self.assertEqual(s.run(max_steps=200), 200)
        self.assertEqual(s.instructions, 200)

    def test_run_budget_counts_skipped_words(self):
        s = make_system(0x0000, 0x0000, 0x1204, on_unknown="skip",
                        clock=FakeClock(0.25))
        self.assertEqual(s.run(max_steps=200), 198)
        self.assertEqual(s.skipped_opcodes, 2)

    def test_advance_step_cap(self):
        s = make_system(0x1200)
        s.advance(0.25, max_steps=40)
        self.assertEqual((s.instructions, s.ticks), (40, 15))
        s.advance(0.25, max_steps=0)
        self.assertEqual((s.instructions, s.ticks), (40, 30))

    def test_run_stop_event(self):
        s = make_system(0x1200, clock=FakeClock(0.25))
        stop = threading.Event()
        stop.set()
        self.assertEqual(s.run(stop_event=stop), 0)

    def test_run_until_halt(self):
        s = make_system(0x6001, 0x0000, on_unknown="halt",
                        clock=FakeClock(0.25))
        self.assertEqual(s.run(), 1)
        self.assertTrue(s.halted)


# =========================================================================
#  Display helpers
# =========================================================================

class TestDisplayHelpers(unittest.TestCase):
    def test_keymap(self):
        self.assertEqual(sorted(KEYMAP.values()), list(range(16)))
        self.assertEqual(KEYMAP["x"], 0x0)
        self.assertEqual(KEYMAP["v"], 0xF)

    def test_pixels_to_rgb(self):
        pixels = bytearray(8 * 4)
        pixels[1 * 8 + 3] = 1  # (x=3, y=1)
        rgb = pixels_to_rgb(pixels, 8, 4, fg=(1, 2, 3), bg=(9, 9, 9))
        self.assertEqual(rgb.shape, (8, 4, 3))
        self.assertEqual(rgb.dtype, np.uint8)
        self.assertEqual(rgb[3, 1].tolist(), [1, 2, 3])
        self.assertEqual(rgb[1, 3].tolist(), [9, 9, 9])

    def test_render_ascii(self):
        self.assertEqual(render_ascii(bytes([1, 0, 1, 0, 1, 0]), 3, 2),
                         "#.#\n.#.")
        self.assertEqual(render_ascii(bytes([1, 0]), 2, 1, on="X", off=" "),
                         "X ")

    def test_headless_snapshots(self):
        s = make_system(0xD015, 0x1202, clock=FakeClock(0.25))
        disp = HeadlessDisplay(s)
        disp.start()
        self.assertIsNone(disp.snapshot())
        s.run(max_steps=150, on_frame=disp.on_frame)
        self.assertEqual(len(disp.snapshots), 1)
        self.assertEqual(sum(disp.snapshots[0]), 14)  # glyph "0"
        disp.stop()
        self.assertTrue(disp.stop_event.is_set())
        self.assertFalse(disp.running)


@pytest.mark.display
class TestFramebufferDisplay(unittest.TestCase):
    def test_start_stop(self):
        s = make_system(0x1200)
        disp = FramebufferDisplay(s, scale=2)
        disp.start()
        self.assertTrue(disp.running)
        disp.stop()
        self.assertFalse(disp.running)

    def test_key_events(self):
        import pygame
        pygame.init()
        try:
            s = Chip8System()
            disp = FramebufferDisplay(s)
            down = pygame.event.Event(pygame.KEYDOWN, key=pygame.K_q)
            disp._handle_key(pygame, down, True)
            self.assertTrue(s.cpu.keypad.is_pressed(0x4))
            disp._handle_key(pygame, down, False)
            self.assertFalse(s.cpu.keypad.is_pressed(0x4))
            esc = pygame.event.Event(pygame.KEYDOWN, key=pygame.K_ESCAPE)
            disp._handle_key(pygame, esc, True)
            self.assertTrue(disp.stop_event.is_set())
        finally:
            pygame.quit()


# =========================================================================
#  CLI
# =========================================================================

class TestDisasm(unittest.TestCase):
    def test_valid_word(self):
        self.assertEqual(disasm_one(words(0x6A42), 0), ("LD VA, 0x42", 2))

    def test_bad_word(self):
        self.assertEqual(disasm_one(words(0x0123), 0), (".dw 0x0123", 2))

    def test_wraps_at_end_of_memory(self):
        mem = bytearray(4096)
        mem[0xFFF] = 0x00
        mem[0x000] = 0xE0
        self.assertEqual(disasm_one(mem, 0xFFF), ("CLS", 2))


class TestMonitor(unittest.TestCase):
    def test_asm_and_step(self):
        cli, out = make_cli()
        cli.onecmd('asm -e "ld v0, 5; add v0, 1"')
        self.assertIn("Assembled 4 bytes at 0x200", out.getvalue())
        cli.onecmd("step 2")
        self.assertIn("0x200: LD V0, 0x05", out.getvalue())
        self.assertIn("0x202: ADD V0, 0x01", out.getvalue())
        self.assertEqual(cli.sys.cpu.v[0], 6)
        cli.onecmd("regs")
        self.assertIn("V0 = 0x06", out.getvalue())

    def test_breakpoint(self):
        cli, out = make_cli()
        cli.onecmd('asm -e "loop: add v0, 1; jp loop"')
        cli.onecmd("bp 0x202")
        self.assertEqual(cli.breakpoints, {0x202})
        cli.onecmd("run")
        self.assertIn("Breakpoint hit at 0x202", out.getvalue())
        self.assertEqual(cli.sys.cpu.v[0], 1)
        cli.onecmd("bpd all")
        self.assertEqual(cli.breakpoints, set())
        cli.onecmd("run 20")
        self.assertIn("Stopped after 20 steps.", out.getvalue())

    def test_run_ticks_timers(self):
        cli, out = make_cli()
        cli.onecmd('asm -e "ld v0, 50; ld dt, v0; loop: jp loop"')
        cli.onecmd("run 102")
        self.assertEqual(cli.sys.cpu.delay.value, 40)

    def test_key_wait(self):
        cli, out = make_cli()
        cli.onecmd('asm -e "ld v1, k; end: jp end"')
        cli.onecmd("run")
        self.assertIn("Waiting for key -> V1", out.getvalue())
        cli.onecmd("key 7")
        self.assertIn("Key 7 down", out.getvalue())
        cli.onecmd("step")
        self.assertEqual(cli.sys.cpu.v[1], 7)
        cli.onecmd("key 7 up")
        self.assertFalse(cli.sys.cpu.keypad.is_pressed(7))

    def test_bad_key(self):
        cli, out = make_cli()
        cli.onecmd("key 1f")
        self.assertIn("Error", out.getvalue())

    def test_fault_reported(self):
        cli, out = make_cli()
        cli.onecmd("step")
        self.assertIn("Fault: Unrecognized opcode 0x0000", out.getvalue())

    def test_setreg(self):
        cli, out = make_cli()
        cli.onecmd("setreg v3 0x42")
        cli.onecmd("setreg i 0x300")
        cli.onecmd("setreg pc 0x204")
        cli.onecmd("setreg st 5")
        c = cli.sys.cpu
        self.assertEqual((c.v[3], c.i, c.pc, c.sound.value), (0x42, 0x300, 0x204, 5))
        cli.onecmd("timers")
        self.assertIn("ST = 5", out.getvalue())
        self.assertIn("buzzing", out.getvalue())
        cli.onecmd("setreg r1 1")
        self.assertIn("Unknown register.", out.getvalue())

    def test_memory_commands(self):
        cli, out = make_cli()
        cli.onecmd("dump 0 16")
        self.assertIn("f0 90 90 90 f0", out.getvalue())
        cli.onecmd("setmem 0x010 1")
        self.assertIn("read-only", out.getvalue())
        self.assertEqual(cli.sys.cpu.mem[0x010], GLYPHS[0x10])
        cli.onecmd("setmem 0x04f 1 2")
        self.assertIn("Skipped 1 bytes", out.getvalue())
        self.assertEqual(cli.sys.cpu.mem[0x04F:0x051], bytes([GLYPHS[0x4F], 2]))
        cli.onecmd("setmem 0x100 0x12")
        self.assertEqual(cli.sys.cpu.mem[0x100], 0x12)
        cli.onecmd("setmem 0x300 0xab 0xcd")
        self.assertEqual(cli.sys.cpu.mem[0x300:0x302], b"\xab\xcd")

    def test_disasm(self):
        cli, out = make_cli()
        cli.onecmd('asm -e "cls; jp 0x200"')
        cli.onecmd("disasm 0x200 2")
        self.assertIn(">>> 0x200: 00 e0  CLS", out.getvalue())
        self.assertIn("0x202: 12 00  JP 0x200", out.getvalue())

    def test_screen_and_stack(self):
        cli, out = make_cli()
        cli.onecmd('asm -e "drw v0, v0, 5"')
        cli.onecmd("step")
        cli.onecmd("screen")
        self.assertIn("####....", out.getvalue())
        cli.onecmd("stack")
        self.assertIn("(empty)", out.getvalue())
        cli.onecmd("devices")
        self.assertIn("[Framebuffer]", out.getvalue())

    def test_load(self):
        with tempfile.TemporaryDirectory() as d:
            path = os.path.join(d, "prog.ch8")
            with open(path, "wb") as f:
                f.write(words(0x6033))
            cli, out = make_cli()
            cli.onecmd(f"load {path}")
        self.assertIn("Loaded 2 bytes", out.getvalue())
        cli.onecmd("step")
        self.assertEqual(cli.sys.cpu.v[0], 0x33)

    def test_load_missing_file(self):
        cli, out = make_cli()
        cli.onecmd("load /nonexistent/prog.ch8")
        self.assertIn("Error", out.getvalue())

    def test_asm_error(self):
        cli, out = make_cli()
        cli.onecmd('asm -e "frob v0"')
        self.assertIn("Assembly error: Line 1", out.getvalue())

    def test_unknown_and_quit(self):
        cli, out = make_cli()
        cli.onecmd("frobnicate")
        self.assertIn("Unknown command", out.getvalue())
        self.assertTrue(cli.onecmd("quit"))
        self.assertTrue(cli.onecmd("q"))


class TestMain(unittest.TestCase):
    SOURCE = ("    ld v0, 8\n"
              "    ld f, v0\n"
              "    drw v1, v1, 5\n"
              "end:\n"
              "    jp end\n")

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = self._tmp.name
        self.src = os.path.join(self.dir, "demo.asm")
        with open(self.src, "w") as f:
            f.write(self.SOURCE)
        # basicConfig is a no-op once the root logger has handlers
        self._handlers = logging.getLogger().handlers[:]

    def tearDown(self):
        logging.getLogger().handlers[:] = self._handlers
        self._tmp.cleanup()

    def call(self, *argv) -> tuple[int, str]:
        out = io.StringIO()
        with contextlib.redirect_stdout(out), \
                contextlib.redirect_stderr(io.StringIO()):
            status = main(list(argv))
        return status, out.getvalue()

    def test_assemble(self):
        rom = os.path.join(self.dir, "demo.ch8")
        status, text = self.call("--assemble", self.src, rom)
        self.assertEqual(status, 0)
        self.assertIn("(8 bytes)", text)
        with open(rom, "rb") as f:
            self.assertEqual(f.read(), bytes(assemble(self.SOURCE)))

    def test_disasm(self):
        status, text = self.call(self.src, "--disasm")
        self.assertEqual(status, 0)
        self.assertIn("0x200: 6008  LD V0, 0x08", text)
        self.assertIn("0x206: 1206  JP 0x206", text)

    def test_headless_run(self):
        status, text = self.call(self.src, "--run", "--steps", "100")
        self.assertEqual(status, 0)
        self.assertIn("####", text)
        self.assertIn("100 instructions", text)

    def test_headless_run_fault(self):
        rom = os.path.join(self.dir, "bad.ch8")
        with open(rom, "wb") as f:
            f.write(words(0x6001, 0x0123))
        status, _ = self.call(rom, "--run", "--on-unknown", "halt")
        self.assertEqual(status, 1)
        # Skipping runs on through empty memory until the step limit is reached
        status, text = self.call(rom, "--run", "--on-unknown", "skip",
                                 "--steps", "20")
        self.assertEqual(status, 0)
        self.assertIn("1 instructions", text)

    def test_missing_program(self):
        status, _ = self.call(os.path.join(self.dir, "nope.ch8"), "--run")
        self.assertEqual(status, 1)


if __name__ == "__main__":
    unittest.main()
