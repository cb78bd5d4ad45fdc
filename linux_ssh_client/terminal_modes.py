"""Encoder for the pseudo-terminal mode string of RFC 4254 section 8.

The encoding is a sequence of ``(opcode: uint8, value: uint32 big-endian)``
pairs terminated by ``TTY_OP_END``. A lone ``TTY_OP_END`` byte asks the
server to use its own defaults.

Example:
    >>> modes = (
    ...     TerminalModesBuilder()
    ...     .set_flag(TerminalMode.ECHO, False)
    ...     .set_speed(38400)
    ...     .build()
    ... )
"""
from __future__ import annotations

import struct
from enum import IntEnum

_PAIR = struct.Struct(">BI")
_UINT32_MAX = 0xFFFFFFFF

EMPTY_TERMINAL_MODES = b"\x00"


class TerminalMode(IntEnum):
    TTY_OP_END = 0

    # special characters
    VINTR = 1
    VQUIT = 2
    VERASE = 3
    VKILL = 4
    VEOF = 5
    VEOL = 6
    VEOL2 = 7
    VSTART = 8
    VSTOP = 9
    VSUSP = 10
    VDSUSP = 11
    VREPRINT = 12
    VWERASE = 13
    VLNEXT = 14
    VFLUSH = 15
    VSWTCH = 16
    VSTATUS = 17
    VDISCARD = 18

    # input flags
    IGNPAR = 30
    PARMRK = 31
    INPCK = 32
    ISTRIP = 33
    INLCR = 34
    IGNCR = 35
    ICRNL = 36
    IUCLC = 37
    IXON = 38
    IXANY = 39
    IXOFF = 40
    IMAXBEL = 41

    # local flags
    ISIG = 50
    ICANON = 51
    XCASE = 52
    ECHO = 53
    ECHOE = 54
    ECHOK = 55
    ECHONL = 56
    NOFLSH = 57
    TOSTOP = 58
    IEXTEN = 59
    ECHOCTL = 60
    ECHOKE = 61
    PENDIN = 62

    # output flags
    OPOST = 70
    OLCUC = 71
    ONLCR = 72
    OCRNL = 73
    ONOCR = 74
    ONLRET = 75

    # control flags
    CS7 = 90
    CS8 = 91
    PARENB = 92
    PARODD = 93

    TTY_OP_ISPEED = 128
    TTY_OP_OSPEED = 129


class TerminalModesBuilder:
    """Accumulates mode pairs in insertion order."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def set_character(self, mode: TerminalMode, value: int) -> TerminalModesBuilder:
        return self.set_mode(mode, value)

    def set_flag(self, mode: TerminalMode, enabled: bool) -> TerminalModesBuilder:
        return self.set_mode(mode, 1 if enabled else 0)

    def set_speed(self, baud: int) -> TerminalModesBuilder:
        self.set_mode(TerminalMode.TTY_OP_ISPEED, baud)
        return self.set_mode(TerminalMode.TTY_OP_OSPEED, baud)

    def set_mode(self, mode: TerminalMode, value: int) -> TerminalModesBuilder:
        opcode = int(mode)
        if opcode == TerminalMode.TTY_OP_END or not 0 < opcode < 160:
            raise ValueError(f"invalid terminal mode opcode: {opcode}")
        if not 0 <= value <= _UINT32_MAX:
            raise ValueError(f"terminal mode value out of range: {value}")
        self._buffer += _PAIR.pack(opcode, value)
        return self

    def build(self) -> bytes:
        return bytes(self._buffer) + EMPTY_TERMINAL_MODES
