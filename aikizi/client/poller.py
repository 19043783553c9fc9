# aikizi/client/poller.py
"""
Decode desde el lado cliente: validar -> enviar -> sondear hasta estado final.

Sondeo cada 1.5s, como mucho 120 veces (~3 min).
"""

from __future__ import annotations

import base64
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from aikizi.client.api import ApiClient, ApiError, ReauthRequired

log = logging.getLogger(__name__)

MB = 1024 * 1024
ALLOWED_MIME = ("image/jpeg", "image/png", "image/webp")

COMPLETED = "completed"
FAILED = "failed"
CANCELED = "canceled"
INSUFFICIENT_TOKENS = "insufficient_tokens"
REAUTH_REQUIRED = "reauth_required"
TIMED_OUT = "timed_out"
REJECTED = "rejected"


class UploadRejected(ValueError):
    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class DecodeOutcome:
    state: str
    result: Optional[dict] = None
    error: Optional[str] = None
    code: Optional[str] = None
    job_id: Optional[str] = None


def validate_upload(data: bytes, mime_type: str, max_upload_mb: int = 25) -> None:
    if mime_type not in ALLOWED_MIME:
        raise UploadRejected("Only JPEG, PNG or WebP images are allowed.", "UNSUPPORTED_TYPE")
    if not data:
        raise UploadRejected("The image is empty.", "EMPTY_FILE")
    if len(data) > max_upload_mb * MB:
        raise UploadRejected(f"The image exceeds {max_upload_mb}MB.", "FILE_TOO_LARGE")


class DecodePoller:
    def __init__(
        self,
        api: ApiClient,
        interval: float = 1.5,
        max_attempts: int = 120,
        max_upload_mb: int = 25,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api = api
        self.interval = interval
        self.max_attempts = max_attempts
        self.max_upload_mb = max_upload_mb
        self.sleep = sleep
        self._cancel = threading.Event()

    def request_cancel(self) -> None:
        """El próximo sondeo enviará cancel=1."""
        self._cancel.set()

    def decode(
        self,
        data: bytes,
        mime_type: str,
        model: str,
        idem_key: Optional[str] = None,
    ) -> DecodeOutcome:
        try:
            validate_upload(data, mime_type, self.max_upload_mb)
        except UploadRejected as e:
            return DecodeOutcome(REJECTED, error=str(e), code=e.code)

        self._cancel.clear()
        image = base64.b64encode(data).decode("ascii")
        try:
            body = self.api.submit_decode(image, mime_type, model, idem_key or uuid.uuid4().hex)
        except ReauthRequired as e:
            return DecodeOutcome(REAUTH_REQUIRED, error=e.message, code=e.code)
        except ApiError as e:
            return self._from_error(e)

        if body.get("result") is not None:
            return DecodeOutcome(COMPLETED, result=body["result"], job_id=body.get("jobId"))
        return self.poll(body["jobId"])

    def poll(self, job_id: str) -> DecodeOutcome:
        for attempt in range(1, self.max_attempts + 1):
            self.sleep(self.interval)
            try:
                status = self.api.decode_status(job_id, cancel=self._cancel.is_set())
            except ReauthRequired as e:
                return DecodeOutcome(REAUTH_REQUIRED, error=e.message, code=e.code, job_id=job_id)
            except ApiError as e:
                if e.transient:
                    log.warning("[poller] job=%s sondeo %d falló: %s", job_id, attempt, e)
                    continue
                return self._from_error(e, job_id)

            outcome = self._terminal(status, job_id)
            if outcome is not None:
                return outcome

        log.warning("[poller] job=%s sin estado final tras %d intentos", job_id, self.max_attempts)
        return DecodeOutcome(TIMED_OUT, error="Decode is taking too long. Please try again.", job_id=job_id)

    def cancel(self, job_id: str) -> dict:
        return self.api.decode_status(job_id, cancel=True)

    # -----------------------------------------------------------
    # INTERNOS
    # -----------------------------------------------------------
    @staticmethod
    def _terminal(status: dict, job_id: str) -> Optional[DecodeOutcome]:
        state = status.get("status")
        if state == COMPLETED:
            return DecodeOutcome(COMPLETED, result=status.get("result"), job_id=job_id)
        if state == CANCELED or (state == FAILED and status.get("code") == "CANCELED"):
            return DecodeOutcome(CANCELED, error=status.get("error"), code="CANCELED", job_id=job_id)
        if state == FAILED:
            return DecodeOutcome(FAILED, error=status.get("error"), code=status.get("code"), job_id=job_id)
        return None

    @staticmethod
    def _from_error(e: ApiError, job_id: Optional[str] = None) -> DecodeOutcome:
        job_id = job_id or e.payload.get("jobId")
        if e.code == "INSUFFICIENT_TOKENS":
            return DecodeOutcome(INSUFFICIENT_TOKENS, error=e.message, code=e.code)
        if e.code == "CANCELED":
            return DecodeOutcome(CANCELED, error=e.message, code=e.code, job_id=job_id)
        return DecodeOutcome(FAILED, error=e.message, code=e.code, job_id=job_id)
