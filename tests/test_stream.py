import json

import pytest

from geminiproxy.errors import IncompleteStreamError, StreamDecodeError
from geminiproxy.stream import (
    DONE_FRAME,
    Completion,
    Delta,
    Heartbeat,
    LineSplitter,
    StreamReframer,
    parse_line,
)

DELTA_LINE = 'data: {"choices":[{"delta":{"content":"Hel"}}]}\n'
FINISH_LINE = 'data: {"choices":[{"delta":{},"finish_reason":"stop"}]}\n'


def frame_payloads(frames):
    """Decode the JSON payload of every frame except the [DONE] sentinel."""
    return [json.loads(frame[len("data: "):]) for frame in frames if frame != DONE_FRAME]


def make_reframer():
    return StreamReframer("chatcmpl-test", "gemini-1.5-flash-latest", created=1700000000)


class TestLineSplitter:
    def test_keeps_incomplete_line_until_next_chunk(self):
        splitter = LineSplitter()
        splitter.feed(b"data: one\ndata: tw")
        assert splitter.next_line() == "data: one"
        assert splitter.next_line() is None
        assert splitter.pending == "data: tw"

        splitter.feed(b"o\n")
        assert splitter.next_line() == "data: two"
        assert splitter.next_line() is None
        assert splitter.pending == ""

    def test_several_lines_in_one_chunk(self):
        splitter = LineSplitter()
        splitter.feed(b"a\n\nb\n")
        assert [splitter.next_line() for _ in range(4)] == ["a", "", "b", None]

    def test_strips_carriage_returns(self):
        splitter = LineSplitter()
        splitter.feed(b"data: x\r\n")
        assert splitter.next_line() == "data: x"

    def test_multibyte_character_split_across_chunks(self):
        encoded = "data: été\n".encode("utf-8")
        splitter = LineSplitter()
        splitter.feed(encoded[:7])
        splitter.feed(encoded[7:])
        assert splitter.next_line() == "data: été"

    def test_flush_returns_residual_fragment(self):
        splitter = LineSplitter()
        splitter.feed(b"a\nrest")
        assert splitter.next_line() == "a"
        assert splitter.flush() == "rest"
        assert splitter.flush() is None

    def test_invalid_utf8(self):
        with pytest.raises(StreamDecodeError):
            LineSplitter().feed(b"\xff\xfe\n")


class TestParseLine:
    def test_delta(self):
        assert parse_line(DELTA_LINE.strip()) == (Delta("Hel"),)

    def test_finish_reason(self):
        assert parse_line(FINISH_LINE.strip()) == (Completion("stop"),)

    def test_delta_and_finish_on_one_line(self):
        line = 'data: {"choices":[{"delta":{"content":"!"},"finish_reason":"length"}]}'
        assert parse_line(line) == (Delta("!"), Completion("length"))

    @pytest.mark.parametrize("line", [
        "",
        ": keep-alive",
        "event: message",
        "data: [DONE]",
        'data: {"choices":[{"delta":{"content":""}}]}',
        'data: {"choices":[{"delta":{"role":"assistant"}}]}',
        'data: {"usageMetadata":{"totalTokenCount":3}}',
    ])
    def test_heartbeats(self, line):
        assert parse_line(line) == (Heartbeat(),)

    @pytest.mark.parametrize("line", [
        "data: {not json",
        "data: [1, 2]",
        'data: {"choices":[]}',
        'data: {"choices":[{"delta":"text"}]}',
        'data: {"choices":[{"delta":{"content":5}}]}',
        'data: {"choices":[{"finish_reason":1}]}',
        'data: {"something":"else"}',
    ])
    def test_malformed_lines(self, line):
        with pytest.raises(StreamDecodeError):
            parse_line(line)

    def test_gemini_candidate(self):
        line = 'data: {"candidates":[{"content":{"role":"model","parts":[{"text":"Hi"},{"text":"!"}]}}]}'
        assert parse_line(line) == (Delta("Hi!"),)

    def test_gemini_finish_reason_is_mapped(self):
        line = 'data: {"candidates":[{"content":{"parts":[{"text":"."}]},"finishReason":"MAX_TOKENS"}]}'
        assert parse_line(line) == (Delta("."), Completion("length"))

    def test_gemini_unspecified_finish_reason_is_ignored(self):
        line = 'data: {"candidates":[{"content":{"parts":[{"text":"a"}]},"finishReason":"FINISH_REASON_UNSPECIFIED"}]}'
        assert parse_line(line) == (Delta("a"),)


class TestStreamReframer:
    """Tests for re-framing downstream SSE into OpenAI chunks."""

    def test_delta_frame(self):
        frames = make_reframer().feed(DELTA_LINE.encode())
        assert len(frames) == 1
        assert frames[0].startswith("data: ")
        assert frames[0].endswith("\n\n")
        assert frame_payloads(frames) == [{
            "id": "chatcmpl-test",
            "object": "chat.completion.chunk",
            "created": 1700000000,
            "model": "gemini-1.5-flash-latest",
            "choices": [{"index": 0, "delta": {"content": "Hel"}, "finish_reason": None}],
        }]

    def test_split_line_gives_same_output_as_whole_line(self):
        whole = make_reframer().feed(DELTA_LINE.encode())

        split = make_reframer()
        first = split.feed(b'data: {"choi')
        second = split.feed(b'ces":[{"delta":{"content":"Hel"}}]}\n')
        assert first == []
        assert second == whole

    def test_delta_only_never_sends_done(self):
        reframer = make_reframer()
        frames = reframer.feed((DELTA_LINE * 3).encode())
        assert len(frames) == 3
        assert DONE_FRAME not in frames
        assert not reframer.finished

    def test_finish_sends_final_chunk_and_done_once(self):
        reframer = make_reframer()
        frames = reframer.feed((DELTA_LINE + FINISH_LINE).encode())
        assert frames[-1] == DONE_FRAME
        assert frames.count(DONE_FRAME) == 1
        final = frame_payloads(frames)[-1]
        assert final["choices"] == [{"index": 0, "delta": {}, "finish_reason": "stop"}]
        assert reframer.finished

        # anything after the finish is ignored
        assert reframer.feed(FINISH_LINE.encode()) == []
        assert reframer.close() == []

    def test_output_order_follows_input(self):
        lines = "".join(
            f'data: {{"choices":[{{"delta":{{"content":"{word}"}}}}]}}\n\n' for word in ["a", "b", "c"]
        )
        frames = make_reframer().feed(lines.encode())
        assert [p["choices"][0]["delta"]["content"] for p in frame_payloads(frames)] == ["a", "b", "c"]

    def test_byte_by_byte_feeding(self):
        data = (DELTA_LINE + FINISH_LINE).encode()
        reframer = make_reframer()
        frames = []
        for i in range(len(data)):
            frames.extend(reframer.feed(data[i:i + 1]))
        assert frames == make_reframer().feed(data)

    def test_malformed_line_aborts(self):
        reframer = make_reframer()
        with pytest.raises(StreamDecodeError):
            reframer.feed(b"data: {oops}\n")

    def test_end_without_finish_is_incomplete(self):
        reframer = make_reframer()
        reframer.feed(DELTA_LINE.encode())
        assert reframer.close() == []
        with pytest.raises(IncompleteStreamError):
            reframer.check_complete()

    def test_close_processes_unterminated_last_line(self):
        reframer = make_reframer()
        reframer.feed(FINISH_LINE.strip().encode())
        frames = reframer.close()
        assert frames[-1] == DONE_FRAME
        reframer.check_complete()

    def test_error_frame(self):
        frame = make_reframer().error_frame(IncompleteStreamError("cut off"))
        assert json.loads(frame[len("data: "):]) == {"error": {"message": "cut off", "type": "incomplete_stream"}}

    def test_gemini_stream(self):
        data = (
            'data: {"candidates":[{"content":{"parts":[{"text":"Hi"}],"role":"model"}}]}\r\n\r\n'
            'data: {"candidates":[{"content":{"parts":[{"text":" there"}],"role":"model"},"finishReason":"STOP"}]}\r\n\r\n'
        ).encode()
        frames = make_reframer().feed(data)
        payloads = frame_payloads(frames)
        assert [p["choices"][0]["delta"] for p in payloads] == [{"content": "Hi"}, {"content": " there"}, {}]
        assert payloads[-1]["choices"][0]["finish_reason"] == "stop"
        assert frames[-1] == DONE_FRAME
