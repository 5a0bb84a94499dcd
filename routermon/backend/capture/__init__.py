"""
capture/__init__.py

Public API for the capture sub-package.
"""

from .decoder import decode_frame
from .filter import build_bpf_filter
from .interfaces import resolve_interface_addresses
from .loop import CaptureLoop, CaptureState
from .tap import ScapyTap, open_tap

__all__ = [
    "CaptureLoop",
    "CaptureState",
    "ScapyTap",
    "build_bpf_filter",
    "decode_frame",
    "open_tap",
    "resolve_interface_addresses",
]
