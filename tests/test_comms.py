import pytest

from igt import comms


def test_packet_fields_survive_the_wire():
    packet = comms.subtest_result_packet("first-subtest", "SUCCESS", "0.012")
    decoded = comms.decode(comms.encode(packet))
    assert decoded.type == comms.PacketType.SUBTEST_RESULT
    assert decoded.name == "first-subtest"
    assert decoded.result == "SUCCESS"
    assert decoded.timeused == "0.012"


def test_exec_packet_argv():
    decoded = comms.decode(comms.encode(comms.exec_packet(["bin", "--run-subtest", "a,b"])))
    assert decoded.argv == ("bin", "--run-subtest", "a,b")


def test_decode_rejects_bad_packets():
    data = comms.encode(comms.log_packet(1, "hello"))
    with pytest.raises(comms.CommsParseError):
        comms.decode(data[:-3])
    with pytest.raises(comms.CommsParseError):
        comms.decode(b"\x01\x00")
    bogus = bytearray(data)
    bogus[4] = 200
    with pytest.raises(comms.CommsParseError):
        comms.decode(bytes(bogus))


def test_dump_resynchronizes_after_garbage(tmp_path):
    path = tmp_path / "comms"
    with path.open("ab") as handle:
        comms.write_packet_with_canary(handle, comms.subtest_start_packet("a"))
        handle.write(b"garbage")
        comms.write_packet_with_canary(handle, comms.exit_packet(0, "1.000"))
    packets = comms.read_dump(path)
    assert [p.type for p in packets] == [comms.PacketType.SUBTEST_START, comms.PacketType.EXIT]
    assert packets[1].timeused == "1.000"


def test_dump_resynchronizes_after_a_cut_frame(tmp_path):
    path = tmp_path / "comms"
    first = comms.encode(comms.subtest_start_packet("a"))
    with path.open("ab") as handle:
        comms.write_packet_with_canary(handle, first[:-2])
        comms.write_packet_with_canary(handle, comms.subtest_start_packet("b"))
        comms.write_packet_with_canary(handle, comms.exit_packet(0, "0.500"))
    packets = comms.read_dump(path)
    assert [p.type for p in packets] == [comms.PacketType.SUBTEST_START, comms.PacketType.EXIT]
    assert packets[0].name == "b"


def test_canary_bytes_inside_a_payload(tmp_path):
    path = tmp_path / "comms"
    text = "x" + comms.CANARY.pack(comms.SOCKET_DUMP_CANARY).decode("latin-1") + "y"
    with path.open("ab") as handle:
        comms.write_packet_with_canary(handle, comms.log_packet(1, text))
        comms.write_packet_with_canary(handle, comms.subtest_start_packet("a"))
    packets = comms.read_dump(path)
    assert [p.type for p in packets] == [comms.PacketType.LOG, comms.PacketType.SUBTEST_START]


def test_large_packet_in_dump(tmp_path):
    path = tmp_path / "comms"
    with path.open("ab") as handle:
        comms.write_packet_with_canary(handle, comms.log_packet(1, "z" * 70000))
    (packet,) = comms.read_dump(path)
    assert len(packet.text) == 70000


def test_truncated_dump_ends_iteration(tmp_path):
    path = tmp_path / "comms"
    with path.open("ab") as handle:
        comms.write_packet_with_canary(handle, comms.subtest_start_packet("a"))
        comms.write_packet_with_canary(handle, comms.subtest_start_packet("b"))
    data = path.read_bytes()
    path.write_bytes(data[:-2])
    assert [p.name for p in comms.read_dump(path)] == ["a"]


def test_connection_from_environment_without_fd():
    assert comms.RunnerConnection.from_environment({}) is None
    assert comms.RunnerConnection.from_environment({comms.ENV_SOCKET_FD: "nope"}) is None
