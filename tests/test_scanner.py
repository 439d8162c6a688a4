from pathlib import Path
import sys
import io

import cv2
import numpy as np
import pytest
from PIL import Image

sys.path.append(str(Path(__file__).resolve().parents[1]))

from qr_worker.handler import WorkerHandler
from qr_worker.scanner import ScanError, _as_text, load_luma, scan_qr
from unwrap_qr.queue.envelope import Failure, InProgress, Success, decode_status, encode_status
from unwrap_qr.services.server_handler import ServerHandler
from unwrap_qr.storage.registry import TaskRegistry


def _qr_png(text: str) -> bytes:
    code = cv2.QRCodeEncoder.create().encode(text)
    code = cv2.resize(code, None, fx=10, fy=10, interpolation=cv2.INTER_NEAREST)
    code = cv2.copyMakeBorder(code, 40, 40, 40, 40, cv2.BORDER_CONSTANT, value=255)
    ok, buf = cv2.imencode(".png", code)
    assert ok
    return buf.tobytes()


def _blank_png() -> bytes:
    out = io.BytesIO()
    Image.new("RGB", (200, 200), "white").save(out, format="PNG")
    return out.getvalue()


def test_scan_reads_generated_code():
    assert scan_qr(_qr_png("hello")) == "hello"


def test_luma_is_single_channel():
    luma = load_luma(_blank_png())

    assert luma.shape == (200, 200)
    assert luma.dtype == np.uint8


def test_garbage_bytes_are_an_image_error():
    with pytest.raises(ScanError) as exc:
        scan_qr(b"definitely not an image")

    assert str(exc.value)


def test_image_without_code():
    with pytest.raises(ScanError) as exc:
        scan_qr(_blank_png())

    assert str(exc.value) == "no code found"


def test_real_round_trip_reaches_success():
    registry = TaskRegistry()
    registry.insert("X")

    reply = WorkerHandler().handle("X", encode_status(InProgress(data=_qr_png("hello"))))
    ServerHandler(registry).handle("X", reply)

    assert registry.get("X").status == Success(text="hello")


def test_corrupted_upload_reaches_failure():
    registry = TaskRegistry()
    registry.insert("Y")

    reply = WorkerHandler().handle("Y", encode_status(InProgress(data=b"\x89PNG\r\n\x1a\n garbage")))
    ServerHandler(registry).handle("Y", reply)

    status = registry.get("Y").status
    assert isinstance(status, Failure)
    assert status.reason


def test_worker_replies_success_for_a_readable_code():
    reply = WorkerHandler().handle("X", encode_status(InProgress(data=_qr_png("hello"))))

    assert decode_status(reply) == Success(text="hello")


def test_printable_text_and_line_breaks_pass():
    assert _as_text("hello\tworld\r\n") == "hello\tworld\r\n"
    assert _as_text("héllo ✓") == "héllo ✓"


@pytest.mark.parametrize("decoded", ["a\x00b", "a\x1bb", "a\x7fb", "a\x85b", "a\x9fb"])
def test_control_characters_are_not_text(decoded):
    with pytest.raises(ScanError) as exc:
        _as_text(decoded)

    assert str(exc.value) == "not representable as text"
