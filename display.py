"""
CHIP-8 Framebuffer Display
===========================
Renders the 64×32 framebuffer in a pygame window and feeds host key
transitions into the keypad latch.  Runs in a background thread so the
interpreter loop owns the main thread.

Keyboard mapping (host → hex keypad):

    1 2 3 4        1 2 3 C
    Q W E R   →    4 5 6 D
    A S D F        7 8 9 E
    Z X C V        A 0 B F

Escape or closing the window sets ``stop_event``; hand the same event to
Chip8System.run() to shut both down together.

Usage (programmatic):
    from display import FramebufferDisplay
    disp = FramebufferDisplay(sys_emu)
    disp.start()
    sys_emu.run(stop_event=disp.stop_event)
    disp.stop()

Usage (CLI):
    chip8 game.ch8 --display --scale 12
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from system import Chip8System

logger = logging.getLogger(__name__)

KEYMAP = {
    "1": 0x1, "2": 0x2, "3": 0x3, "4": 0xC,
    "q": 0x4, "w": 0x5, "e": 0x6, "r": 0xD,
    "a": 0x7, "s": 0x8, "d": 0x9, "f": 0xE,
    "z": 0xA, "x": 0x0, "c": 0xB, "v": 0xF,
}

FG_COLOR = (51, 255, 102)
BG_COLOR = (0, 0, 0)
BUZZ_COLOR = (255, 170, 0)


def pixels_to_rgb(pixels: bytes | bytearray, width: int, height: int,
                  fg: tuple[int, int, int] = FG_COLOR,
                  bg: tuple[int, int, int] = BG_COLOR) -> np.ndarray:
    """Expand row-major 0/1 pixels into a (width, height, 3) RGB array.

    The column-major shape is what pygame.surfarray.blit_array expects.
    """
    lit = np.frombuffer(bytes(pixels), dtype=np.uint8,
                        count=width * height).reshape(height, width) != 0
    lut = np.array([bg, fg], dtype=np.uint8)
    return lut[lit.astype(np.uint8)].transpose(1, 0, 2)


def render_ascii(pixels: bytes | bytearray, width: int, height: int,
                 on: str = "#", off: str = ".") -> str:
    rows = []
    for y in range(height):
        row = pixels[y * width:(y + 1) * width]
        rows.append("".join(on if p else off for p in row))
    return "\n".join(rows)


class FramebufferDisplay:
    """Background-threaded pygame display for the CHIP-8 framebuffer."""

    def __init__(self, sys_emu: "Chip8System", scale: int = 10,
                 title: str = "CHIP-8", fps: int = 60):
        self.sys = sys_emu
        self.scale = max(1, scale)
        self.title = title
        self.fps = fps
        self.stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._started = threading.Event()

    # -- public API -------------------------------------------------------

    def start(self):
        """Start the display thread.  Returns once the window is open."""
        self.stop_event.clear()
        self._started.clear()
        self._thread = threading.Thread(target=self._run, daemon=True,
                                        name="chip8-display")
        self._thread.start()
        self._started.wait(timeout=5.0)

    def stop(self):
        """Signal the display thread to shut down and wait for it."""
        self.stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=3.0)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -- internals --------------------------------------------------------

    def _handle_key(self, pygame, event, down: bool):
        if event.key == pygame.K_ESCAPE:
            self.stop_event.set()
            return
        key = KEYMAP.get(pygame.key.name(event.key))
        if key is not None:
            self.sys.cpu.set_key(key, down)

    def _run(self):
        """Main display loop (runs in background thread)."""
        import pygame

        fb = self.sys.cpu.fb
        pygame.init()
        pygame.display.set_caption(self.title)
        win_w, win_h = fb.width * self.scale, fb.height * self.scale
        screen = pygame.display.set_mode((win_w, win_h))
        clock = pygame.time.Clock()
        fb_surface = pygame.Surface((fb.width, fb.height))
        was_buzzing = False

        self._started.set()

        try:
            while not self.stop_event.is_set():
                for event in pygame.event.get():
                    if event.type == pygame.QUIT:
                        self.stop_event.set()
                        return
                    elif event.type == pygame.KEYDOWN:
                        self._handle_key(pygame, event, True)
                    elif event.type == pygame.KEYUP:
                        self._handle_key(pygame, event, False)
                    elif event.type == pygame.WINDOWFOCUSLOST:
                        self.sys.cpu.keypad.release_all()

                # Tint lit pixels while the sound timer runs
                buzzing = self.sys.cpu.sound.active
                pixels, dirty = fb.read()
                if dirty or buzzing != was_buzzing:
                    fg = BUZZ_COLOR if buzzing else FG_COLOR
                    pygame.surfarray.blit_array(
                        fb_surface,
                        pixels_to_rgb(pixels, fb.width, fb.height, fg=fg))
                    pygame.transform.scale(fb_surface, (win_w, win_h), screen)
                    pygame.display.flip()
                    was_buzzing = buzzing

                clock.tick(self.fps)

        except Exception:
            logger.exception("display loop failed")
            self.stop_event.set()
        finally:
            pygame.quit()


class HeadlessDisplay:
    """No-op display for testing — records framebuffer snapshots."""

    def __init__(self, sys_emu: "Chip8System"):
        self.sys = sys_emu
        self.stop_event = threading.Event()
        self.snapshots: list[bytes] = []

    def start(self):
        pass

    def stop(self):
        self.stop_event.set()

    def snapshot(self) -> bytes | None:
        """Capture the framebuffer if it changed since the last read."""
        pixels, dirty = self.sys.cpu.read_framebuffer()
        if not dirty:
            return None
        self.snapshots.append(pixels)
        return pixels

    def on_frame(self, sys_emu: "Chip8System"):
        """Chip8System.run() frame callback."""
        self.snapshot()

    @property
    def running(self) -> bool:
        return False
