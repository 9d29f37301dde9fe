"""Video stream outputs: discard, plain files, a circular buffer and the network."""

from __future__ import annotations

import enum
import re
import socket
import struct
import sys
from dataclasses import dataclass
from typing import Any, BinaryIO

# Frames inside the circular buffer are aligned to this many bytes (a power of 2).
ALIGN = 16

# Maximum payload that a single UDP datagram may carry.
MAX_UDP_SIZE = 65507

# Per-frame record in the circular buffer: length, keyframe flag, timestamp.
_HEADER = struct.Struct("<I?3xq")

_FILENAME_LIMIT = 255

_NETWORK_ADDRESS = re.compile(r"\s*(\S{1,3})://(\d+\.\d+\.\d+\.\d+):(\d+)")


@dataclass
class OutputOptions:
    """Settings that decide where and how encoded video is written.

    circular is the circular buffer size in megabytes, segment the segment
    length in milliseconds, and wrap the number of file names to cycle through.
    """

    output: str = ""
    save_pts: str = ""
    pause: bool = False
    circular: int = 0
    segment: int = 0
    split: bool = False
    flush: bool = False
    wrap: int = 0
    listen: bool = False
    verbose: bool = False


class Flag(enum.IntFlag):
    """Flags passed along with every output buffer."""

    NONE = 0
    KEYFRAME = 1
    RESTART = 2


class _State(enum.Enum):
    DISABLED = 0
    WAITING_KEYFRAME = 1
    RUNNING = 2


def _trunc_divmod(value: int, divisor: int) -> tuple[int, int]:
    quotient = abs(value) // divisor
    if value < 0:
        quotient = -quotient
    return quotient, value - quotient * divisor


def _aligned(n: int) -> int:
    return (n + ALIGN - 1) & ~(ALIGN - 1)


class Output:
    """Base output: gates frames on enable state and keyframes, and discards them.

    Subclasses override output_buffer to send the frames somewhere.
    """

    def __init__(self, options: OutputOptions) -> None:
        self.options = options
        self._state = _State.WAITING_KEYFRAME
        self._enable = not options.pause
        self._time_offset = 0
        self._last_timestamp = 0
        self._timestamps = None
        self._closed = False
        if options.save_pts:
            try:
                self._timestamps = open(options.save_pts, "w", encoding="ascii")
            except OSError as exc:
                raise OSError(f"Failed to open timestamp file {options.save_pts}") from exc
            self._timestamps.write("# timecode format v2\n")

    def signal(self) -> None:
        """Toggle whether output is enabled."""
        self._enable = not self._enable

    def output_ready(self, mem: Any, timestamp_us: int, keyframe: bool) -> None:
        """Accept one encoded frame, passing it on once a keyframe has been seen."""
        flags = Flag.KEYFRAME if keyframe else Flag.NONE
        if not self._enable:
            self._state = _State.DISABLED
        elif self._state is _State.DISABLED:
            self._state = _State.WAITING_KEYFRAME
        if self._state is _State.WAITING_KEYFRAME and keyframe:
            self._state = _State.RUNNING
            flags |= Flag.RESTART
        if self._state is not _State.RUNNING:
            return

        # Keep timestamps continuous across a pause.
        if flags & Flag.RESTART:
            self._time_offset = timestamp_us - self._last_timestamp
        self._last_timestamp = timestamp_us - self._time_offset

        self.output_buffer(mem, self._last_timestamp, flags)

        if self._timestamps is not None:
            ms, us = _trunc_divmod(self._last_timestamp, 1000)
            self._timestamps.write(f"{ms}.{us:03d}\n")

    def output_buffer(self, mem: Any, timestamp_us: int, flags: Flag) -> None:
        """Deliver one frame; the base class drops it."""

    def close(self) -> None:
        """Release the output's resources."""
        if self._closed:
            return
        self._closed = True
        if self._timestamps is not None:
            self._timestamps.close()
            self._timestamps = None

    def __enter__(self) -> Output:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class CircularBuffer:
    """A fixed-size byte ring buffer."""

    def __init__(self, size: int) -> None:
        if size <= 1:
            raise ValueError("circular buffer size must be at least 2")
        self._size = size
        self._buf = bytearray(size)
        self._rptr = 0
        self._wptr = 0

    def empty(self) -> bool:
        return self._rptr == self._wptr

    def available(self) -> int:
        """Number of bytes that can be written without overwriting unread data."""
        return (self._rptr - self._wptr - 1) % self._size

    def skip(self, n: int) -> None:
        self._rptr = (self._rptr + n) % self._size

    def read(self, n: int) -> bytes:
        """Remove and return the next n bytes."""
        if n >= self._size:
            raise ValueError("read larger than the circular buffer")
        out = bytearray()
        if self._rptr + n >= self._size:
            first = self._size - self._rptr
            out += self._buf[self._rptr :]
            n -= first
            self._rptr = 0
        out += self._buf[self._rptr : self._rptr + n]
        self._rptr += n
        return bytes(out)

    def pad(self, n: int) -> None:
        self._wptr = (self._wptr + n) % self._size

    def write(self, data: Any) -> None:
        """Append bytes at the write position."""
        chunk = bytes(data)
        n = len(chunk)
        if n >= self._size:
            raise ValueError("write larger than the circular buffer")
        if self._wptr + n >= self._size:
            first = self._size - self._wptr
            self._buf[self._wptr :] = chunk[:first]
            chunk = chunk[first:]
            self._wptr = 0
        self._buf[self._wptr : self._wptr + len(chunk)] = chunk
        self._wptr += len(chunk)


def _open_sink(path: str) -> tuple[BinaryIO, bool]:
    if path == "-":
        return sys.stdout.buffer, False
    if not path:
        raise ValueError("could not open output file")
    return open(path, "wb"), True


class CircularOutput(Output):
    """Keep the most recent frames in memory and write them out on close.

    Writing starts at the first keyframe still held in the buffer.
    """

    def __init__(self, options: OutputOptions, buffer_size: int | None = None) -> None:
        super().__init__(options)
        try:
            self._buffer = CircularBuffer(options.circular << 20 if buffer_size is None else buffer_size)
            self._file, self._owns_file = _open_sink(options.output)
        except BaseException:
            Output.close(self)
            raise

    def _drop_oldest(self) -> None:
        length, _, _ = _HEADER.unpack(self._buffer.read(_HEADER.size))
        self._buffer.skip(_aligned(length))

    def output_buffer(self, mem: Any, timestamp_us: int, flags: Flag) -> None:
        data = bytes(mem)
        size = len(data)
        pad = -size % ALIGN
        while size + pad + _HEADER.size > self._buffer.available():
            if self._buffer.empty():
                raise ValueError("circular buffer too small")
            self._drop_oldest()
        self._buffer.write(_HEADER.pack(size, bool(flags & Flag.KEYFRAME), timestamp_us))
        self._buffer.write(data)
        self._buffer.pad(pad)

    def close(self) -> None:
        if self._closed:
            return
        total = frames = 0
        seen_keyframe = False
        try:
            while not self._buffer.empty():
                length, keyframe, _ = _HEADER.unpack(self._buffer.read(_HEADER.size))
                seen_keyframe = seen_keyframe or keyframe
                if seen_keyframe:
                    self._file.write(self._buffer.read(length))
                    self._buffer.skip(-length % ALIGN)
                    total += length
                    frames += 1
                else:
                    self._buffer.skip(_aligned(length))
        finally:
            if self._owns_file:
                self._file.close()
            else:
                self._file.flush()
            super().close()
        print(f"Wrote {total} bytes ({frames} frames)", file=sys.stderr)


class FileOutput(Output):
    """Write frames to a file, optionally split into numbered segments.

    The output name may hold a printf-style pattern such as "clip%04d.h264".
    """

    def __init__(self, options: OutputOptions) -> None:
        super().__init__(options)
        self._file: BinaryIO | None = None
        self._owns_file = False
        self._count = 0
        self._file_start_time_ms = 0

    def output_buffer(self, mem: Any, timestamp_us: int, flags: Flag) -> None:
        options = self.options
        # A new file is needed when a full segment reaches a keyframe, or when
        # recording restarts in split mode (which is always at a keyframe).
        if (
            self._file is None
            or (
                options.segment
                and flags & Flag.KEYFRAME
                and _trunc_divmod(timestamp_us, 1000)[0] - self._file_start_time_ms > options.segment
            )
            or (options.split and flags & Flag.RESTART)
        ):
            self._close_file()
            self._open_file(timestamp_us)

        data = memoryview(mem).cast("B")
        if options.verbose:
            print(f"FileOutput: output buffer size {data.nbytes}", file=sys.stderr)
        if self._file is not None and data.nbytes:
            try:
                self._file.write(data)
            except OSError as exc:
                raise OSError("failed to write output bytes") from exc
            if options.flush:
                self._file.flush()

    def _next_filename(self) -> str:
        pattern = self.options.output
        try:
            name = pattern % self._count
        except TypeError:
            name = pattern
        except ValueError as exc:
            raise ValueError("failed to generate filename") from exc
        self._count += 1
        if self.options.wrap:
            self._count %= self.options.wrap
        return name[:_FILENAME_LIMIT]

    def _open_file(self, timestamp_us: int) -> None:
        options = self.options
        if options.output == "-":
            self._file, self._owns_file = sys.stdout.buffer, False
        elif options.output:
            filename = self._next_filename()
            try:
                self._file = open(filename, "wb")
            except OSError as exc:
                raise OSError(f"failed to open output file {filename}") from exc
            self._owns_file = True
            if options.verbose:
                print(f"FileOutput: opened output file {filename}", file=sys.stderr)
            self._file_start_time_ms = _trunc_divmod(timestamp_us, 1000)[0]

    def _close_file(self) -> None:
        if self._file is not None:
            if self._owns_file:
                self._file.close()
            else:
                self._file.flush()
        self._file = None

    def close(self) -> None:
        if self._closed:
            return
        try:
            self._close_file()
        finally:
            super().close()


def parse_network_address(url: str) -> tuple[str, str, int]:
    """Split "proto://a.b.c.d:port" into protocol, dotted address and port."""
    match = _NETWORK_ADDRESS.match(url)
    if match is None:
        raise ValueError(f"bad network address {url}")
    port = int(match.group(3))
    if port > 0xFFFF:
        raise ValueError(f"bad network address {url}")
    return match.group(1), match.group(2), port


def _check_address(address: str) -> None:
    try:
        socket.inet_aton(address)
    except OSError as exc:
        raise ValueError(f"inet_aton failed for {address}") from exc


class NetOutput(Output):
    """Send frames over UDP, or over TCP as a client or a listening server."""

    def __init__(self, options: OutputOptions) -> None:
        super().__init__(options)
        self._sock: socket.socket | None = None
        self._destination: tuple[str, int] | None = None
        try:
            protocol, address, port = parse_network_address(options.output)
            if protocol == "udp":
                _check_address(address)
                self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
                self._destination = (address, port)
            elif protocol == "tcp":
                self._sock = self._accept(port) if options.listen else self._connect(address, port)
            else:
                raise ValueError(f"unrecognised network protocol {options.output}")
        except BaseException:
            Output.close(self)
            raise

    def _accept(self, port: int) -> socket.socket:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                listener.bind(("", port))
            except OSError as exc:
                raise OSError("failed to bind listen socket") from exc
            listener.listen(1)
            if self.options.verbose:
                print("Waiting for client to connect...", file=sys.stderr)
            conn, _ = listener.accept()
            if self.options.verbose:
                print("Client connection accepted", file=sys.stderr)
        return conn

    def _connect(self, address: str, port: int) -> socket.socket:
        _check_address(address)
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        if self.options.verbose:
            print("Connecting to server...", file=sys.stderr)
        try:
            sock.connect((address, port))
        except OSError as exc:
            sock.close()
            raise OSError("connect to server failed") from exc
        if self.options.verbose:
            print("Connected", file=sys.stderr)
        return sock

    def output_buffer(self, mem: Any, timestamp_us: int, flags: Flag) -> None:
        data = memoryview(mem).cast("B")
        if self.options.verbose:
            print(f"NetOutput: output buffer size {data.nbytes}", file=sys.stderr)
        if self._sock is None:
            raise ValueError("network output is closed")
        try:
            if self._destination is None:
                self._sock.sendall(data)
            else:
                for start in range(0, data.nbytes, MAX_UDP_SIZE):
                    self._sock.sendto(data[start : start + MAX_UDP_SIZE], self._destination)
        except OSError as exc:
            raise OSError("failed to send data on socket") from exc

    def close(self) -> None:
        if self._closed:
            return
        try:
            if self._sock is not None:
                self._sock.close()
                self._sock = None
        finally:
            super().close()


def create_output(options: OutputOptions) -> Output:
    """Choose the output kind that the options ask for."""
    if options.output.startswith(("udp://", "tcp://")):
        return NetOutput(options)
    if options.circular:
        return CircularOutput(options)
    if options.output:
        return FileOutput(options)
    return Output(options)