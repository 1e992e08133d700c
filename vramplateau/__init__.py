"""Black-box VRAM leak harness: open/close windows under a compositor and measure VRAM."""

__version__ = "0.1.0"
