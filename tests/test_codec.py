import json

import pytest

from common.exceptions import ProtocolError
from deriv_gateway.codec import EnvelopeKind, decode, encode


def test_encode_injects_req_id_without_mutating_request():
    request = {"ticks": "R_100", "subscribe": 1}
    frame = encode(request, 7)
    assert json.loads(frame) == {"ticks": "R_100", "subscribe": 1, "req_id": 7}
    assert "req_id" not in request
    assert " " not in frame


def test_encode_rejects_empty_request():
    with pytest.raises(ValueError):
        encode({})


def test_decode_response():
    envelope = decode('{"msg_type":"ping","ping":"pong","req_id":3}')
    assert envelope.kind == EnvelopeKind.RESPONSE
    assert envelope.req_id == 3
    assert envelope.body == "pong"
    assert not envelope.is_stream


def test_decode_stream_frame():
    envelope = decode(json.dumps({
        "msg_type": "tick",
        "tick": {"symbol": "R_100", "quote": 1234.57},
        "subscription": {"id": "abc"},
    }))
    assert envelope.kind == EnvelopeKind.STREAM
    assert envelope.subscription_id == "abc"
    assert envelope.req_id is None
    assert envelope.body["quote"] == 1234.57


def test_first_subscription_frame_is_both_correlated_and_streamed():
    envelope = decode(json.dumps({
        "msg_type": "tick",
        "tick": {"symbol": "R_100"},
        "subscription": {"id": "abc"},
        "req_id": 4,
    }))
    assert envelope.kind == EnvelopeKind.STREAM
    assert envelope.req_id == 4
    assert envelope.is_stream


def test_stream_msg_type_without_subscription_is_stream():
    envelope = decode('{"msg_type":"balance","balance":{"balance":10}}')
    assert envelope.kind == EnvelopeKind.STREAM
    assert envelope.is_stream


def test_decode_error_frame():
    envelope = decode(json.dumps({
        "msg_type": "authorize",
        "error": {"code": "InvalidToken", "message": "The token is invalid."},
        "req_id": 1,
    }))
    assert envelope.kind == EnvelopeKind.ERROR
    assert envelope.error["code"] == "InvalidToken"
    assert envelope.req_id == 1


def test_decode_accepts_bytes_and_numeric_string_req_id():
    envelope = decode(b'{"msg_type":"time","time":1,"req_id":"12"}')
    assert envelope.req_id == 12


@pytest.mark.parametrize("raw", [
    "not json",
    "[1, 2, 3]",
    '{"msg_type":"time","req_id":"abc"}',
    '{"msg_type":"website_status"}',
    b"\xff\xfe",
])
def test_decode_rejects_malformed_frames(raw):
    with pytest.raises(ProtocolError):
        decode(raw)
