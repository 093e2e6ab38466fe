"""PTY process management: shells bound to pseudo-terminals.

Each shell runs in its own session and process group, with output read
asynchronously and kept in a fixed-size ring buffer for replay.
"""

from ptybroker.pty.buffer import RingBuffer
from ptybroker.pty.process import PTYProcess, PTYStatus

__all__ = [
    "PTYProcess",
    "PTYStatus",
    "RingBuffer",
]
