from pathlib import Path
import sys

import orjson
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from unwrap_qr.common.errors import ProtocolMismatchError
from unwrap_qr.queue.envelope import (
    Failure,
    InProgress,
    Pending,
    Success,
    can_transition,
    decode_status,
    encode_status,
    is_terminal,
    new_correlation_id,
)


def test_in_progress_carries_bytes_as_base64():
    body = encode_status(InProgress(data=b"\x89PNG\x00\xff"))

    assert orjson.loads(body) == {"InProgress": "iVBORwD/"}
    assert decode_status(body) == InProgress(data=b"\x89PNG\x00\xff")


def test_in_progress_without_data():
    assert orjson.loads(encode_status(InProgress())) == {"InProgress": None}
    assert decode_status(b'{"InProgress": null}') == InProgress()


def test_terminal_statuses_on_the_wire():
    assert orjson.loads(encode_status(Success(text="hello"))) == {"Success": "hello"}
    assert decode_status(b'{"Failure": "no code found"}') == Failure(reason="no code found")


def test_pending_is_never_sent():
    with pytest.raises(ProtocolMismatchError):
        encode_status(Pending())


@pytest.mark.parametrize(
    "body",
    [
        b"\x89PNG raw image bytes",  # a v1 body
        b"[]",
        b'{"Success": "a", "Failure": "b"}',
        b'{"Done": "x"}',
        b'{"Success": 42}',
        b'{"InProgress": 7}',
        b'{"InProgress": "not base64!"}',
    ],
)
def test_anything_but_a_v2_envelope_is_a_protocol_mismatch(body):
    with pytest.raises(ProtocolMismatchError) as exc:
        decode_status(body)

    assert "v2" in str(exc.value)


def test_state_machine_only_moves_forward():
    assert can_transition(Pending(), InProgress())
    assert can_transition(Pending(), Success(text="x"))
    assert can_transition(InProgress(), Failure(reason="x"))

    assert not can_transition(InProgress(), Pending())
    assert not can_transition(Success(text="x"), Failure(reason="y"))
    assert not can_transition(Failure(reason="y"), InProgress())
    assert not can_transition(Success(text="x"), Success(text="z"))


def test_terminal_statuses():
    assert is_terminal(Success(text="x"))
    assert is_terminal(Failure(reason="x"))
    assert not is_terminal(Pending())
    assert not is_terminal(InProgress())


def test_correlation_ids_are_unique():
    ids = {new_correlation_id() for _ in range(1000)}
    assert len(ids) == 1000
