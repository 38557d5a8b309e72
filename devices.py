"""
CHIP-8 Peripheral / Device Layer
=================================
State the interpreter owns besides memory and registers:

  CountdownTimer  — 8-bit delay / sound timers, decremented at 60 Hz
  Keypad          — 16-key hexadecimal input latch
  Framebuffer     — 64×32 monochrome display with a one-shot dirty flag

The host writes the keypad and reads the framebuffer; the interpreter does
the opposite.  Neither side ever writes what the other one owns.
"""

from __future__ import annotations
from typing import Optional

SCREEN_WIDTH  = 64
SCREEN_HEIGHT = 32
NUM_KEYS      = 16
TIMER_HZ      = 60


# ---------------------------------------------------------------------------
#  Device base class
# ---------------------------------------------------------------------------

class Device:
    """Abstract peripheral."""

    def __init__(self, name: str):
        self.name = name

    def reset(self):
        """Return to the power-on state."""
        pass

    def tick(self, ticks: int = 1):
        """Advance the device by N 60 Hz ticks. Override for timers etc."""
        pass

    def status(self) -> str:
        return ""


# ---------------------------------------------------------------------------
#  Countdown timer (delay / sound)
# ---------------------------------------------------------------------------

class CountdownTimer(Device):
    """8-bit down-counter that saturates at zero."""

    def __init__(self, name: str):
        super().__init__(name)
        self.value: int = 0

    def reset(self):
        self.value = 0

    def write(self, value: int):
        self.value = value & 0xFF

    def tick(self, ticks: int = 1):
        if ticks <= 0:
            return
        self.value = max(0, self.value - ticks)

    @property
    def active(self) -> bool:
        return self.value > 0

    def status(self) -> str:
        return f"{self.value:3d}"


# ---------------------------------------------------------------------------
#  Keypad input latch
# ---------------------------------------------------------------------------
# Hex keypad layout on the original machine:
#
#   1 2 3 C
#   4 5 6 D
#   7 8 9 E
#   A 0 B F

class Keypad(Device):
    """Sixteen boolean key states, written by the host only."""

    def __init__(self):
        super().__init__("Keypad")
        self.keys: list[bool] = [False] * NUM_KEYS

    @staticmethod
    def _check(key: int) -> int:
        if not 0 <= key < NUM_KEYS:
            raise ValueError(f"Key must be 0x0-0xF, got {key!r}")
        return key

    def press(self, key: int):
        self.keys[self._check(key)] = True

    def release(self, key: int):
        self.keys[self._check(key)] = False

    def set(self, key: int, down: bool):
        self.keys[self._check(key)] = bool(down)

    def release_all(self):
        self.keys = [False] * NUM_KEYS

    def is_pressed(self, key: int) -> bool:
        return self.keys[key & 0xF]

    def first_pressed(self) -> Optional[int]:
        """Lowest-numbered key currently down, or None."""
        for k, down in enumerate(self.keys):
            if down:
                return k
        return None

    def status(self) -> str:
        down = [f"{k:X}" for k, d in enumerate(self.keys) if d]
        return " ".join(down) if down else "-"


# ---------------------------------------------------------------------------
#  Framebuffer
# ---------------------------------------------------------------------------

class Framebuffer(Device):
    """64×32 single-bit display.

    Pixels are stored row-major, one byte (0 or 1) per pixel.  ``dirty``
    records whether the buffer changed since the renderer last consumed it.
    """

    def __init__(self, width: int = SCREEN_WIDTH, height: int = SCREEN_HEIGHT):
        super().__init__("Framebuffer")
        self.width = width
        self.height = height
        self.pixels = bytearray(width * height)
        self.dirty: bool = False

    def reset(self):
        self.pixels = bytearray(self.width * self.height)
        self.dirty = True

    def clear(self):
        self.pixels[:] = bytes(len(self.pixels))
        self.dirty = True

    def pixel(self, x: int, y: int) -> int:
        return self.pixels[(y % self.height) * self.width + (x % self.width)]

    def draw_sprite(self, x: int, y: int, rows: bytes | bytearray) -> bool:
        """XOR an 8-pixel-wide sprite at (x, y), wrapping at the edges.

        Returns True if any lit pixel was switched off (collision).
        """
        w, h = self.width, self.height
        collision = False
        for row, bits in enumerate(rows):
            py = (y + row) % h
            base = py * w
            for col in range(8):
                if not (bits >> (7 - col)) & 1:
                    continue
                idx = base + (x + col) % w
                if self.pixels[idx]:
                    collision = True
                self.pixels[idx] ^= 1
        self.dirty = True
        return collision

    def read(self) -> tuple[bytes, bool]:
        """Snapshot the pixels and consume the dirty flag."""
        dirty = self.dirty
        self.dirty = False
        return bytes(self.pixels), dirty

    def rows(self) -> list[list[int]]:
        w = self.width
        return [list(self.pixels[r * w:(r + 1) * w]) for r in range(self.height)]

    def status(self) -> str:
        lit = sum(self.pixels)
        return f"{self.width}x{self.height} lit={lit} dirty={int(self.dirty)}"
