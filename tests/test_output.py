import socket
from pathlib import Path

import pytest

from picampipe.output import (
    CircularBuffer,
    CircularOutput,
    FileOutput,
    Flag,
    NetOutput,
    Output,
    OutputOptions,
    create_output,
    parse_network_address,
)


class Recorder(Output):
    def __init__(self, options):
        super().__init__(options)
        self.calls = []

    def output_buffer(self, mem, timestamp_us, flags):
        self.calls.append((bytes(mem), timestamp_us, flags))


def test_waits_for_first_keyframe():
    out = Recorder(OutputOptions())
    out.output_ready(b"a", 100, False)
    out.output_ready(b"b", 200, True)
    out.output_ready(b"c", 300, False)
    assert [c[0] for c in out.calls] == [b"b", b"c"]
    assert out.calls[0][1] == 0
    assert out.calls[0][2] == Flag.KEYFRAME | Flag.RESTART
    assert out.calls[1][2] == Flag.NONE


def test_paused_output_starts_on_signal():
    out = Recorder(OutputOptions(pause=True))
    out.output_ready(b"a", 0, True)
    assert out.calls == []
    out.signal()
    out.output_ready(b"b", 10, True)
    assert [c[0] for c in out.calls] == [b"b"]


def test_timestamps_continuous_after_pause():
    out = Recorder(OutputOptions())
    out.output_ready(b"a", 1000, True)
    out.output_ready(b"b", 2000, False)
    out.signal()
    out.output_ready(b"c", 3000, True)
    out.signal()
    out.output_ready(b"d", 4000, False)
    out.output_ready(b"e", 5000, True)
    assert [c[0] for c in out.calls] == [b"a", b"b", b"e"]
    assert out.calls[2][1] == out.calls[1][1]
    assert out.calls[2][2] & Flag.RESTART


def test_save_pts_writes_timecodes(tmp_path):
    pts = tmp_path / "pts.txt"
    with Output(OutputOptions(save_pts=str(pts))) as out:
        out.output_ready(b"x", 2000, True)
        out.output_ready(b"y", 3500, False)
    assert pts.read_text() == "# timecode format v2\n0.000\n1.500\n"


def test_save_pts_bad_path_raises(tmp_path):
    with pytest.raises(OSError):
        Output(OutputOptions(save_pts=str(tmp_path / "missing" / "pts.txt")))


def test_circular_buffer_starts_empty():
    cb = CircularBuffer(32)
    assert cb.empty()
    assert cb.available() == 32 - 1


def test_circular_buffer_round_trip_with_wrap():
    cb = CircularBuffer(16)
    cb.write(b"0123456789")
    assert cb.read(10) == b"0123456789"
    cb.write(b"abcdefghijkl")
    assert cb.available() == 15 - 12
    assert cb.read(12) == b"abcdefghijkl"
    assert cb.empty()


def test_circular_buffer_pad_and_skip():
    cb = CircularBuffer(32)
    cb.write(b"abcd")
    cb.pad(4)
    cb.write(b"efgh")
    assert cb.read(4) == b"abcd"
    cb.skip(4)
    assert cb.read(4) == b"efgh"
    assert cb.empty()


def test_circular_buffer_rejects_oversize_write():
    cb = CircularBuffer(8)
    with pytest.raises(ValueError):
        cb.write(b"x" * 8)


def test_circular_output_starts_at_keyframe(tmp_path, capsys):
    path = tmp_path / "out.bin"
    frames = [(b"AAAAA", False), (b"BBBBBBB", True), (b"C" * 20, False)]
    with CircularOutput(OutputOptions(output=str(path), circular=1)) as out:
        for ts, (data, key) in enumerate(frames):
            out.output_buffer(data, ts, Flag.KEYFRAME if key else Flag.NONE)
    assert path.read_bytes() == b"BBBBBBB" + b"C" * 20
    assert f"Wrote {7 + 20} bytes (2 frames)" in capsys.readouterr().err


def test_circular_output_drops_oldest(tmp_path):
    path = tmp_path / "out.bin"
    frames = [bytes([65 + i]) * 16 for i in range(4)]
    with CircularOutput(OutputOptions(output=str(path)), buffer_size=128) as out:
        for ts, data in enumerate(frames):
            out.output_buffer(data, ts, Flag.KEYFRAME)
    assert path.read_bytes() == b"".join(frames[1:])


def test_circular_output_too_small(tmp_path):
    out = CircularOutput(OutputOptions(output=str(tmp_path / "o.bin")), buffer_size=64)
    with pytest.raises(ValueError):
        out.output_buffer(b"x" * 100, 0, Flag.KEYFRAME)
    out.close()


def test_circular_output_needs_file():
    with pytest.raises(ValueError):
        CircularOutput(OutputOptions(circular=1))


def test_file_output_single_file(tmp_path):
    path = tmp_path / "video.h264"
    with FileOutput(OutputOptions(output=str(path))) as out:
        out.output_ready(b"skip", 0, False)
        out.output_ready(b"key", 10, True)
        out.output_ready(b"more", 20, False)
    assert path.read_bytes() == b"keymore"


def test_file_output_segments(tmp_path):
    pattern = str(tmp_path / "seg%d.bin")
    with FileOutput(OutputOptions(output=pattern, segment=1000)) as out:
        out.output_buffer(b"a", 0, Flag.KEYFRAME)
        out.output_buffer(b"b", 1_500_000, Flag.NONE)
        out.output_buffer(b"c", 1_500_000, Flag.KEYFRAME)
    assert Path(pattern % 0).read_bytes() == b"ab"
    assert Path(pattern % 1).read_bytes() == b"c"
    assert not Path(pattern % 2).exists()


def test_file_output_split_with_wrap(tmp_path):
    pattern = str(tmp_path / "part%02d.bin")
    with FileOutput(OutputOptions(output=pattern, split=True, wrap=2)) as out:
        out.output_buffer(b"first", 0, Flag.KEYFRAME | Flag.RESTART)
        out.output_buffer(b"second", 1, Flag.KEYFRAME | Flag.RESTART)
        out.output_buffer(b"third", 2, Flag.KEYFRAME | Flag.RESTART)
    assert Path(pattern % 0).read_bytes() == b"third"
    assert Path(pattern % 1).read_bytes() == b"second"
    written = sorted(p.name for p in tmp_path.iterdir())
    assert written == [Path(pattern % i).name for i in range(2)]


def test_file_output_bad_directory(tmp_path):
    out = FileOutput(OutputOptions(output=str(tmp_path / "nope" / "x.bin")))
    with pytest.raises(OSError):
        out.output_buffer(b"x", 0, Flag.KEYFRAME)
    out.close()


def test_parse_network_address():
    assert parse_network_address("udp://127.0.0.1:8554") == ("udp", "127.0.0.1", 8554)


@pytest.mark.parametrize("url", ["udp://localhost:80", "udp://1.2.3.4", "udp:/1.2.3.4:5"])
def test_parse_network_address_rejects(url):
    with pytest.raises(ValueError):
        parse_network_address(url)


def test_net_output_unknown_protocol():
    with pytest.raises(ValueError, match="unrecognised network protocol"):
        NetOutput(OutputOptions(output="xyz://1.2.3.4:5000"))


def test_net_output_bad_address():
    with pytest.raises(ValueError, match="inet_aton"):
        NetOutput(OutputOptions(output="udp://999.1.1.1:5000"))


def test_net_output_udp_sends():
    receiver = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    receiver.bind(("127.0.0.1", 0))
    receiver.settimeout(5)
    port = receiver.getsockname()[1]
    url = f"udp://127.0.0.1:{port}"
    try:
        with NetOutput(OutputOptions(output=url)) as out:
            out.output_buffer(b"hello", 0, Flag.NONE)
        data, sender = receiver.recvfrom(65536)
        assert data == b"hello"
        assert parse_network_address(url) == ("udp", sender[0], port)
    finally:
        receiver.close()


def test_net_output_tcp_client_sends():
    server = socket.create_server(("127.0.0.1", 0))
    server.settimeout(5)
    port = server.getsockname()[1]
    url = f"tcp://127.0.0.1:{port}"
    try:
        out = NetOutput(OutputOptions(output=url))
        conn, peer = server.accept()
        conn.settimeout(5)
        out.output_buffer(b"stream-data", 0, Flag.KEYFRAME)
        out.close()
        received = b""
        while chunk := conn.recv(1024):
            received += chunk
        conn.close()
        assert received == b"stream-data"
        assert parse_network_address(url) == ("tcp", peer[0], port)
    finally:
        server.close()


def test_create_output_file(tmp_path):
    path = tmp_path / "f.bin"
    with create_output(OutputOptions(output=str(path))) as out:
        out.output_ready(b"data", 0, True)
    assert isinstance(out, FileOutput)
    assert path.read_bytes() == b"data"


def test_create_output_circular(tmp_path):
    path = tmp_path / "c.bin"
    with create_output(OutputOptions(output=str(path), circular=1)) as out:
        out.output_ready(b"data", 0, True)
    assert isinstance(out, CircularOutput)
    assert path.read_bytes() == b"data"


def test_create_output_network_takes_precedence():
    receiver = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    receiver.bind(("127.0.0.1", 0))
    receiver.settimeout(5)
    port = receiver.getsockname()[1]
    url = f"udp://127.0.0.1:{port}"
    try:
        with create_output(OutputOptions(output=url, circular=1)) as out:
            out.output_ready(b"net", 0, True)
        assert isinstance(out, NetOutput)
        data, sender = receiver.recvfrom(1024)
        assert data == b"net"
        assert parse_network_address(url) == ("udp", sender[0], port)
    finally:
        receiver.close()


def test_create_output_plain_still_saves_pts(tmp_path):
    pts = tmp_path / "pts.txt"
    with create_output(OutputOptions(save_pts=str(pts))) as out:
        out.output_ready(b"x", 0, True)
    assert type(out) is Output
    assert pts.read_text().splitlines() == ["# timecode format v2", "0.000"]