from pathlib import Path
import sys

import orjson
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from qr_worker.handler import WorkerHandler
from qr_worker.scanner import ScanError
from unwrap_qr.common.errors import ProtocolMismatchError
from unwrap_qr.queue.actor import QueueActor
from unwrap_qr.queue.broker import Delivery
from unwrap_qr.queue.envelope import Failure, InProgress, Success, encode_status
from unwrap_qr.services.server_handler import ServerHandler
from unwrap_qr.storage.registry import TaskRegistry


def _scanner(mapping):
    def scan(data):
        result = mapping[data]
        if isinstance(result, Exception):
            raise result
        return result

    return scan


def test_worker_and_server_handlers_bind_opposite_queues():
    worker = WorkerHandler()
    server = ServerHandler(TaskRegistry())

    assert (worker.source_queue_name(), worker.target_queue_name()) == ("requests", "responses")
    assert (server.source_queue_name(), server.target_queue_name()) == ("responses", "requests")


def test_worker_replies_success_with_decoded_text():
    handler = WorkerHandler(scanner=_scanner({b"img": "hello"}))

    reply = handler.handle("X", encode_status(InProgress(data=b"img")))

    assert orjson.loads(reply) == {"Success": "hello"}


@pytest.mark.parametrize("reason", ["no code found", "decode failed", "not representable as text"])
def test_worker_turns_scan_errors_into_failure(reason):
    handler = WorkerHandler(scanner=_scanner({b"img": ScanError(reason)}))

    reply = handler.handle("X", encode_status(InProgress(data=b"img")))

    assert orjson.loads(reply) == {"Failure": reason}


def test_worker_reports_unexpected_scanner_crash_as_failure():
    handler = WorkerHandler(scanner=_scanner({b"img": ZeroDivisionError("division by zero")}))

    reply = handler.handle("X", encode_status(InProgress(data=b"img")))

    assert orjson.loads(reply)["Failure"].startswith("scan failed")


@pytest.mark.parametrize(
    "payload",
    [
        encode_status(InProgress()),
        encode_status(Success(text="hi")),
        encode_status(Failure(reason="x")),
        b"raw v1 image bytes",
    ],
)
def test_worker_ignores_anything_but_raw_image_requests(payload):
    handler = WorkerHandler(scanner=_scanner({}))

    assert handler.handle("X", payload) is None


def test_server_applies_terminal_reply_and_never_answers():
    registry = TaskRegistry()
    registry.insert("X")
    handler = ServerHandler(registry)

    assert handler.handle("X", encode_status(Success(text="hello"))) is None
    assert registry.get("X").status == Success(text="hello")


def test_server_accepts_in_progress_before_terminal():
    registry = TaskRegistry()
    registry.insert("X")
    handler = ServerHandler(registry)

    handler.handle("X", encode_status(InProgress()))
    assert registry.get("X").status == InProgress()
    handler.handle("X", encode_status(Failure(reason="decode failed")))
    assert registry.get("X").status == Failure(reason="decode failed")


def test_server_survives_unknown_task_ids():
    registry = TaskRegistry()
    registry.insert("X")
    handler = ServerHandler(registry)

    assert handler.handle("nobody", encode_status(Success(text="?"))) is None
    handler.handle("X", encode_status(Success(text="ok")))

    assert [r.task_id for r in registry.snapshot()] == ["X"]
    assert registry.get("X").status == Success(text="ok")


def test_server_rejects_malformed_reply():
    registry = TaskRegistry()
    registry.insert("X")

    with pytest.raises(ProtocolMismatchError):
        ServerHandler(registry).handle("X", b"hello")
    assert registry.get("X").status.kind == "Pending"


class _Publisher:
    def __init__(self):
        self.jobs = []

    def submit(self, job):
        self.jobs.append(job)


def test_unknown_id_on_responses_does_not_halt_the_server_actor():
    registry = TaskRegistry()
    registry.insert("B")
    actor = QueueActor(ServerHandler(registry), gateway=None, publisher=_Publisher())

    actor.on_delivery(Delivery("A", encode_status(Success(text="a")), ack=lambda: None))
    actor.on_delivery(Delivery("B", b"not an envelope", ack=lambda: None))
    actor.on_delivery(Delivery("B", encode_status(Success(text="b")), ack=lambda: None))

    assert registry.get("B").status == Success(text="b")
    assert actor.publisher.jobs == []


def test_request_without_correlation_id_yields_no_response():
    publisher = _Publisher()
    actor = QueueActor(WorkerHandler(scanner=_scanner({b"img": "hello"})), gateway=None, publisher=publisher)

    actor.on_delivery(Delivery(None, encode_status(InProgress(data=b"img")), ack=lambda: None))

    assert publisher.jobs == []


def test_reply_round_trip_reaches_success():
    registry = TaskRegistry()
    registry.insert("X")
    worker = WorkerHandler(scanner=_scanner({b"img": "hello"}))
    server = ServerHandler(registry)

    server.handle("X", worker.handle("X", encode_status(InProgress(data=b"img"))))

    assert registry.get("X").status == Success(text="hello")
