"""Structured event stream between a test binary and the runner.

Each packet is a little-endian ``(size, type)`` header followed by the
fields of its type. Integers are signed 32 bit, strings are UTF-8 and NUL
terminated. In a ``comms`` dump every packet is preceded by a four byte
canary so a reader can find the next packet after garbage.
"""

from __future__ import annotations

import enum
import logging
import os
import socket
import struct
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Dict, Iterator, List, Optional, Sequence, Tuple, Union

log = logging.getLogger(__name__)

SOCKET_DUMP_CANARY = (ord("I") << 24) | (ord("G") << 16) | (ord("T") << 8) | 1
CANARY = struct.Struct("<I")
HEADER = struct.Struct("<II")
_INT = struct.Struct("<i")

ENV_SOCKET_FD = "IGT_RUNNER_SOCKET_FD"


class CommsParseError(ValueError):
    """A packet or dump could not be decoded."""


class PacketType(enum.IntEnum):
    LOG = 1
    EXEC = 2
    EXIT = 3
    SUBTEST_START = 4
    SUBTEST_RESULT = 5
    DYNAMIC_SUBTEST_START = 6
    DYNAMIC_SUBTEST_RESULT = 7
    VERSIONSTRING = 8
    RESULT_OVERRIDE = 9


@dataclass(frozen=True)
class Packet:
    type: PacketType
    stream: int = 0
    text: str = ""
    name: str = ""
    result: str = ""
    timeused: str = ""
    reason: str = ""
    exitcode: int = 0
    argv: Tuple[str, ...] = field(default_factory=tuple)


# Field order on the wire. "i" is an int, "s" a string, "v" a counted list.
_LAYOUT: Dict[PacketType, Tuple[Tuple[str, str], ...]] = {
    PacketType.LOG: (("stream", "i"), ("text", "s")),
    PacketType.EXEC: (("argv", "v"),),
    PacketType.EXIT: (("exitcode", "i"), ("timeused", "s")),
    PacketType.SUBTEST_START: (("name", "s"),),
    PacketType.SUBTEST_RESULT: (("name", "s"), ("result", "s"), ("timeused", "s"), ("reason", "s")),
    PacketType.DYNAMIC_SUBTEST_START: (("name", "s"),),
    PacketType.DYNAMIC_SUBTEST_RESULT: (("name", "s"), ("result", "s"), ("timeused", "s"), ("reason", "s")),
    PacketType.VERSIONSTRING: (("text", "s"),),
    PacketType.RESULT_OVERRIDE: (("result", "s"),),
}


def log_packet(stream: int, text: str) -> Packet:
    return Packet(PacketType.LOG, stream=stream, text=text)


def exec_packet(argv: Sequence[str]) -> Packet:
    return Packet(PacketType.EXEC, argv=tuple(argv))


def exit_packet(exitcode: int, timeused: str) -> Packet:
    return Packet(PacketType.EXIT, exitcode=exitcode, timeused=timeused)


def subtest_start_packet(name: str) -> Packet:
    return Packet(PacketType.SUBTEST_START, name=name)


def subtest_result_packet(name: str, result: str, timeused: str, reason: str = "") -> Packet:
    return Packet(PacketType.SUBTEST_RESULT, name=name, result=result, timeused=timeused, reason=reason)


def dynamic_subtest_start_packet(name: str) -> Packet:
    return Packet(PacketType.DYNAMIC_SUBTEST_START, name=name)


def dynamic_subtest_result_packet(name: str, result: str, timeused: str, reason: str = "") -> Packet:
    return Packet(PacketType.DYNAMIC_SUBTEST_RESULT, name=name, result=result, timeused=timeused, reason=reason)


def versionstring_packet(text: str) -> Packet:
    return Packet(PacketType.VERSIONSTRING, text=text)


def result_override_packet(result: str) -> Packet:
    return Packet(PacketType.RESULT_OVERRIDE, result=result)


def _encode_str(value: str) -> bytes:
    return value.encode("utf-8", "replace") + b"\0"


def encode(packet: Packet) -> bytes:
    """Return the wire form of ``packet`` including its header."""

    payload = bytearray()
    for attr, kind in _LAYOUT[packet.type]:
        value = getattr(packet, attr)
        if kind == "i":
            payload += _INT.pack(value)
        elif kind == "s":
            payload += _encode_str(value)
        else:
            payload += _INT.pack(len(value))
            for item in value:
                payload += _encode_str(item)
    return HEADER.pack(HEADER.size + len(payload), int(packet.type)) + bytes(payload)


def _decode_str(data: bytes, offset: int) -> Tuple[str, int]:
    end = data.find(b"\0", offset)
    if end < 0:
        raise CommsParseError("Unterminated string in packet")
    return data[offset:end].decode("utf-8", "replace"), end + 1


def decode(data: bytes) -> Packet:
    """Decode one complete packet, header included."""

    if len(data) < HEADER.size:
        raise CommsParseError(f"Packet too short: {len(data)} bytes")
    size, raw_type = HEADER.unpack_from(data)
    if size != len(data):
        raise CommsParseError(f"Packet size mismatch: header says {size}, got {len(data)}")
    try:
        packet_type = PacketType(raw_type)
    except ValueError:
        raise CommsParseError(f"Unknown packet type {raw_type}") from None

    values: Dict[str, object] = {}
    offset = HEADER.size
    for attr, kind in _LAYOUT[packet_type]:
        if kind == "i":
            if offset + _INT.size > size:
                raise CommsParseError("Truncated integer in packet")
            values[attr] = _INT.unpack_from(data, offset)[0]
            offset += _INT.size
        elif kind == "s":
            values[attr], offset = _decode_str(data, offset)
        else:
            if offset + _INT.size > size:
                raise CommsParseError("Truncated list in packet")
            count = _INT.unpack_from(data, offset)[0]
            offset += _INT.size
            items: List[str] = []
            for _ in range(count):
                item, offset = _decode_str(data, offset)
                items.append(item)
            values[attr] = tuple(items)
    return Packet(packet_type, **values)  # type: ignore[arg-type]


def write_packet_with_canary(handle: Union[int, IO[bytes]], packet: Union[Packet, bytes], sync: bool = False) -> None:
    """Append ``packet`` to a comms dump, canary first."""

    data = packet if isinstance(packet, bytes) else encode(packet)
    blob = CANARY.pack(SOCKET_DUMP_CANARY) + data
    if isinstance(handle, int):
        os.write(handle, blob)
        if sync:
            os.fdatasync(handle)
        return
    handle.write(blob)
    handle.flush()
    if sync:
        os.fdatasync(handle.fileno())


def iter_dump(data: bytes) -> Iterator[Packet]:
    """Yield the packets of a comms dump in recorded order.

    Bytes that do not start with the canary are skipped up to the next
    canary. So is a frame that is cut short by the next canary or by the
    end of the dump, or that does not decode.
    """

    marker = CANARY.pack(SOCKET_DUMP_CANARY)
    pos = 0
    while pos < len(data):
        if data[pos:pos + CANARY.size] != marker:
            resync = data.find(marker, pos + 1)
            log.warning("comms: garbage at offset %d, skipping %s bytes", pos,
                        "all remaining" if resync < 0 else resync - pos)
            if resync < 0:
                return
            pos = resync
            continue
        start = pos + CANARY.size
        following = data.find(marker, start)
        if start + HEADER.size > len(data):
            log.warning("comms: truncated packet header at offset %d", start)
            return
        size, _ = HEADER.unpack_from(data, start)
        end = start + size
        # A canary inside the frame means the frame was cut short, unless the
        # frame still ends exactly on a packet boundary.
        aligned = end == len(data) or data[end:end + CANARY.size] == marker
        if size < HEADER.size or end > len(data) or (start <= following < end and not aligned):
            log.warning("comms: truncated packet at offset %d", start)
            if following < 0:
                return
            pos = following
            continue
        try:
            packet = decode(data[start:end])
        except CommsParseError as exc:
            log.warning("comms: undecodable packet at offset %d: %s", start, exc)
            pos = end
            continue
        yield packet
        pos = end


def read_dump(path: Path) -> List[Packet]:
    """Return every packet recorded in the comms file at ``path``."""

    return list(iter_dump(Path(path).read_bytes()))


class RunnerConnection:
    """Sending side of the socket handed down by the runner."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._lock = threading.Lock()

    @classmethod
    def from_environment(cls, environ: Optional[Dict[str, str]] = None) -> Optional["RunnerConnection"]:
        env = os.environ if environ is None else environ
        value = env.get(ENV_SOCKET_FD)
        if not value:
            return None
        try:
            fd = int(value)
            sock = socket.socket(fileno=fd)
        except (ValueError, OSError):
            return None
        return cls(sock)

    def fileno(self) -> int:
        return self._sock.fileno()

    def send(self, packet: Union[Packet, bytes]) -> bool:
        data = packet if isinstance(packet, bytes) else encode(packet)
        try:
            with self._lock:
                self._sock.send(data, socket.MSG_NOSIGNAL)
        except OSError:
            return False
        return True

    def send_raw(self, data: bytes) -> None:
        """Send pre-encoded ``data`` without taking the lock."""

        try:
            os.write(self._sock.fileno(), data)
        except OSError:
            pass

    def close(self) -> None:
        self._sock.close()
