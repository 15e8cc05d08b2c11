"""Tests for the combining entry point."""
import io
import os
import threading

import pytest

from jailhouse.protocol.codec import Message, MessageDecoder, MessageTag, encode
from jailhouse.protocol.entrypoint import OutputCombiner


@pytest.fixture
def pipes():
    stdout_r, stdout_w = os.pipe()
    side_r, side_w = os.pipe()
    yield stdout_r, stdout_w, side_r, side_w
    for fd in (stdout_r, side_r):
        try:
            os.close(fd)
        except OSError:
            pass


class TestOutputCombiner:
    """Tests for OutputCombiner."""

    def test_merges_both_descriptors(self, pipes) -> None:
        stdout_r, stdout_w, side_r, side_w = pipes
        output = io.BytesIO()
        os.write(stdout_w, b"printed by the inmate\n")
        os.write(side_w, encode(MessageTag.YIELD, [1]) + encode(MessageTag.RETURN, "ok"))
        os.close(stdout_w)
        os.close(side_w)

        OutputCombiner(output, stdout_r, side_r, poll_interval=0.01).run_loop()

        messages = MessageDecoder().feed(output.getvalue())
        assert Message(MessageTag.STDOUT, b"printed by the inmate\n") in messages
        assert [m for m in messages if m.tag is not MessageTag.STDOUT] == [
            Message(MessageTag.YIELD, [1]),
            Message(MessageTag.RETURN, "ok"),
        ]

    def test_split_sidechannel_messages_are_forwarded_whole(self, pipes) -> None:
        stdout_r, stdout_w, side_r, side_w = pipes
        output = io.BytesIO()
        combiner = OutputCombiner(output, stdout_r, side_r, poll_interval=0.01).start()
        data = encode(MessageTag.RETURN, "x" * 1000)

        os.write(side_w, data[:10])
        os.write(side_w, data[10:])
        os.close(side_w)
        os.close(stdout_w)
        combiner.finish()

        assert output.getvalue() == data

    def test_finish_stops_idle_loop(self, pipes) -> None:
        stdout_r, stdout_w, side_r, side_w = pipes
        combiner = OutputCombiner(io.BytesIO(), stdout_r, side_r, poll_interval=0.01).start()

        combiner.finish()

        os.close(stdout_w)
        os.close(side_w)

    def test_corrupt_sidechannel_reports_raise_and_keeps_stdout(self, pipes) -> None:
        stdout_r, stdout_w, side_r, side_w = pipes
        output = io.BytesIO()
        combiner = OutputCombiner(output, stdout_r, side_r, poll_interval=0.01).start()

        os.write(side_w, encode(MessageTag.YIELD, ["before"]) + b"\xc1")
        os.write(stdout_w, b"after corruption\n")
        os.write(side_w, encode(MessageTag.RETURN, "ignored"))
        os.close(side_w)
        os.close(stdout_w)
        combiner.finish()

        messages = MessageDecoder().feed(output.getvalue())
        printed = b"".join(m.payload for m in messages if m.tag is MessageTag.STDOUT)
        assert printed == b"after corruption\n"
        structured = [m for m in messages if m.tag is not MessageTag.STDOUT]
        assert structured[0] == Message(MessageTag.YIELD, ["before"])
        assert [m.tag for m in structured[1:]] == [MessageTag.RAISE]
        assert structured[1].payload["class"] == "ProtocolError"

    def test_corruption_after_result_sends_no_second_terminal(self, pipes) -> None:
        stdout_r, stdout_w, side_r, side_w = pipes
        output = io.BytesIO()
        os.write(side_w, encode(MessageTag.RETURN, 42) + b"\xc1")
        os.close(side_w)
        os.close(stdout_w)

        OutputCombiner(output, stdout_r, side_r, poll_interval=0.01).run_loop()

        assert MessageDecoder().feed(output.getvalue()) == [Message(MessageTag.RETURN, 42)]

    def test_inmate_never_blocks_after_corruption(self, pipes) -> None:
        """More than a pipe buffer of output still drains on both descriptors."""
        stdout_r, stdout_w, side_r, side_w = pipes
        output = io.BytesIO()
        combiner = OutputCombiner(output, stdout_r, side_r, poll_interval=0.01).start()
        chunk = b"x" * 4096

        def inmate() -> None:
            os.write(side_w, b"\xc1")
            for _ in range(64):
                os.write(stdout_w, chunk)
                os.write(side_w, chunk)
            os.close(stdout_w)
            os.close(side_w)

        writer = threading.Thread(target=inmate, daemon=True)
        writer.start()
        writer.join(timeout=30)
        combiner.finish()

        assert not writer.is_alive()
        messages = MessageDecoder().feed(output.getvalue())
        printed = b"".join(m.payload for m in messages if m.tag is MessageTag.STDOUT)
        assert printed == chunk * 64

    def test_read_error_counts_as_end_of_stream(self, pipes, monkeypatch: pytest.MonkeyPatch) -> None:
        stdout_r, stdout_w, side_r, side_w = pipes
        output = io.BytesIO()
        real_read = os.read

        def read(fd: int, size: int) -> bytes:
            if fd == side_r:
                raise OSError(5, "Input/output error")
            return real_read(fd, size)

        monkeypatch.setattr(os, "read", read)
        os.write(side_w, encode(MessageTag.RETURN, 1))
        os.write(stdout_w, b"still here\n")
        os.close(stdout_w)

        OutputCombiner(output, stdout_r, side_r, poll_interval=0.01).run_loop()
        os.close(side_w)

        assert MessageDecoder().feed(output.getvalue()) == [Message(MessageTag.STDOUT, b"still here\n")]

    def test_broken_output_keeps_draining(self, pipes) -> None:
        stdout_r, stdout_w, side_r, side_w = pipes

        class ClosedOutput(io.BytesIO):
            def write(self, data) -> int:
                raise BrokenPipeError(32, "Broken pipe")

        os.write(stdout_w, b"nobody is listening\n")
        os.write(side_w, encode(MessageTag.RETURN, None))
        os.close(stdout_w)
        os.close(side_w)

        OutputCombiner(ClosedOutput(), stdout_r, side_r, poll_interval=0.01).run_loop()

        assert os.read(stdout_r, 10) == b""
