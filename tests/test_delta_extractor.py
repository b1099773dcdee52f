"""Tests for services.streaming.delta_extractor."""

import json
import logging

import pytest

from services.streaming.delta_extractor import END, NOOP, Delta, DeltaKind, extract_delta
from services.streaming.frame_decoder import END_OF_STREAM, Frame, FrameDecoder
from .conftest import delta_record


def _frame(record: str) -> Frame:
    [frame] = FrameDecoder().feed(record.encode("utf-8"))
    return frame


class TestExtractDelta:

    def test_text_delta(self):
        assert extract_delta(_frame(delta_record("Hi"))) == Delta(DeltaKind.TEXT, "Hi")

    def test_role_marker_is_noop(self):
        assert extract_delta(_frame(delta_record(role="assistant"))) is NOOP

    def test_empty_content_is_noop(self):
        assert extract_delta(_frame(delta_record(""))) is NOOP

    def test_finish_marker_is_noop(self):
        payload = {"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]}
        assert extract_delta(Frame(json.dumps(payload))) is NOOP

    def test_no_choices_is_noop(self):
        assert extract_delta(Frame('{"choices": []}')) is NOOP
        assert extract_delta(Frame('{"usage": {"total_tokens": 3}}')) is NOOP

    def test_end_of_stream(self):
        assert extract_delta(END_OF_STREAM) is END

    @pytest.mark.parametrize(
        "payload",
        ["{not json", "42", '"text"', "[]", '{"choices": "nope"}', '{"choices": [{"delta": {"content": 5}}]}'],
    )
    def test_malformed_records_are_noop(self, payload):
        assert extract_delta(Frame(payload)) is NOOP

    def test_malformed_record_is_logged(self, caplog):
        with caplog.at_level(logging.WARNING, logger="services.streaming.delta_extractor"):
            extract_delta(Frame("{broken"))
        assert "malformed stream record" in caplog.text


class TestInterleavedRecords:

    def test_malformed_records_do_not_disturb_order(self):
        body = (
            delta_record("A")
            + "data: {garbage\n\n"
            + delta_record("B")
            + "data: 17\n\n"
            + delta_record(role="assistant")
            + delta_record("C")
            + "data: [DONE]\n\n"
        )
        decoder = FrameDecoder()
        deltas = [extract_delta(frame) for frame in decoder.feed(body.encode("utf-8"))]
        texts = [d.text for d in deltas if d.kind is DeltaKind.TEXT]
        assert texts == ["A", "B", "C"]
        assert deltas[-1] is END
