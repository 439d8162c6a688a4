from typing import Callable, Optional

from unwrap_qr.common.errors import ProtocolMismatchError
from unwrap_qr.common.logging import get_project_logger
from unwrap_qr.common.metrics import SCAN_RESULTS_TOTAL
from unwrap_qr.queue.envelope import Failure, InProgress, Success, decode_status, encode_status

from .scanner import ScanError, scan_qr

log = get_project_logger("worker")


class WorkerHandler:
    """Turns in-progress image requests into terminal Success/Failure replies."""

    def __init__(
        self,
        scanner: Callable[[bytes], str] = scan_qr,
        source_queue: str = "requests",
        target_queue: str = "responses",
    ):
        self.scanner = scanner
        self.source_queue = source_queue
        self.target_queue = target_queue

    def source_queue_name(self) -> str:
        return self.source_queue

    def target_queue_name(self) -> str:
        return self.target_queue

    def handle(self, task_id: str, payload: bytes) -> Optional[bytes]:
        try:
            request = decode_status(payload)
        except ProtocolMismatchError as e:
            log.error("unexpected_request", extra={"payload": {"task_id": task_id, "error": str(e)}})
            return None
        if not isinstance(request, InProgress) or request.data is None:
            log.error(
                "unexpected_request",
                extra={"payload": {"task_id": task_id, "error": "worker expects raw image data"}},
            )
            return None

        try:
            text = self.scanner(request.data)
        except ScanError as e:
            reason = str(e) or "scan failed"
        except Exception as e:
            log.error("scan_crashed", exc_info=True, extra={"payload": {"task_id": task_id}})
            reason = f"scan failed: {e}"
        else:
            SCAN_RESULTS_TOTAL.labels(result="success").inc()
            log.info("scan_succeeded", extra={"payload": {"task_id": task_id}})
            return encode_status(Success(text=text))

        SCAN_RESULTS_TOTAL.labels(result="failure").inc()
        log.info("scan_failed", extra={"payload": {"task_id": task_id, "reason": reason}})
        return encode_status(Failure(reason=reason))
