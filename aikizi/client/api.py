# aikizi/client/api.py
"""
Cliente HTTP de la API (httpx).

- ReadinessGate: barrera de arranque; toda llamada autenticada espera a que
  la sesión inicial esté restaurada. Se resuelve una vez y nunca se reinicia.
- ApiClient: un 401 dispara UN refresh silencioso y se reintenta la misma
  llamada; un segundo 401 (o un refresh fallido) => ReauthRequired.
"""

from __future__ import annotations

import logging
import threading
import uuid
from typing import Callable, Optional

import httpx

from aikizi.client.retry import RetryPolicy

log = logging.getLogger(__name__)


class ApiError(RuntimeError):
    def __init__(self, status: int, code: Optional[str], message: str, payload: Optional[dict] = None):
        super().__init__(message)
        self.status = status
        self.code = code
        self.message = message
        self.payload = payload or {}

    @property
    def transient(self) -> bool:
        return self.status == 0 or self.status >= 500


class ReauthRequired(ApiError):
    """La sesión no se pudo renovar: hay que cerrar sesión y volver a entrar."""

    def __init__(self, code: Optional[str] = None):
        super().__init__(401, code or "REAUTH_REQUIRED", "Please sign out and sign back in.")


def _transient(e: BaseException) -> bool:
    return isinstance(e, ApiError) and not isinstance(e, ReauthRequired) and e.transient


ENSURE_RETRY = RetryPolicy(max_attempts=2, delay=1.0, retry_on=(ApiError,), should_retry=_transient)
BALANCE_RETRY = RetryPolicy(max_attempts=3, delay=2.0, retry_on=(ApiError,), should_retry=_transient)


class ReadinessGate:
    def __init__(self) -> None:
        self._ready = threading.Event()

    def mark_ready(self) -> None:
        self._ready.set()

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._ready.wait(timeout)


class AuthSession:
    def __init__(self, access_token: Optional[str], refresher: Optional[Callable[[], Optional[str]]] = None):
        self.access_token = access_token
        self._refresher = refresher

    def refresh(self) -> bool:
        if self._refresher is None:
            return False
        token = self._refresher()
        if not token:
            return False
        self.access_token = token
        return True


class ApiClient:
    def __init__(
        self,
        base_url: str,
        session: AuthSession,
        gate: ReadinessGate,
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = 30.0,
        ready_timeout: float = 10.0,
        ensure_retry: RetryPolicy = ENSURE_RETRY,
        balance_retry: RetryPolicy = BALANCE_RETRY,
    ) -> None:
        self.session = session
        self.gate = gate
        self.ready_timeout = ready_timeout
        self.ensure_retry = ensure_retry
        self.balance_retry = balance_retry
        self._http = httpx.Client(base_url=base_url.rstrip("/"), transport=transport, timeout=timeout)

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # -----------------------------------------------------------
    # NÚCLEO
    # -----------------------------------------------------------
    def request(self, method: str, path: str, *, json=None, params=None, headers=None) -> dict:
        if not self.gate.wait(self.ready_timeout):
            raise ApiError(0, "NOT_READY", "Session is not ready yet.")

        refreshed = False
        while True:
            resp = self._send(method, path, json=json, params=params, headers=headers)
            if resp.status_code != 401:
                break
            code = self._body(resp).get("code")
            if refreshed:
                log.warning("[api] %s %s: 401 tras refresh, se requiere re-login", method, path)
                raise ReauthRequired(code)
            refreshed = True
            try:
                ok = self.session.refresh()
            except (httpx.HTTPError, RuntimeError) as e:
                raise ReauthRequired(code) from e
            if not ok:
                raise ReauthRequired(code)
            log.info("[api] sesión renovada, reintentando %s %s", method, path)

        body = self._body(resp)
        if resp.status_code >= 400:
            raise ApiError(resp.status_code, body.get("code"), body.get("error") or resp.reason_phrase, body)
        return body

    def _send(self, method, path, **kwargs) -> httpx.Response:
        headers = dict(kwargs.pop("headers") or {})
        headers.setdefault("X-Request-Id", uuid.uuid4().hex)
        if self.session.access_token:
            headers["Authorization"] = f"Bearer {self.session.access_token}"
        try:
            return self._http.request(method, path, headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise ApiError(0, "NETWORK_ERROR", str(e))

    @staticmethod
    def _body(resp: httpx.Response) -> dict:
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    # -----------------------------------------------------------
    # ENDPOINTS
    # -----------------------------------------------------------
    def ensure_account(self) -> dict:
        return self.ensure_retry.call(self.request, "POST", "/account/ensure")

    def balance(self) -> dict:
        return self.balance_retry.call(self.request, "GET", "/wallet/balance")

    def submit_decode(self, image: str, mime_type: Optional[str], model: str, idem_key: str) -> dict:
        body = {"image": image, "model": model}
        if mime_type:
            body["mimeType"] = mime_type
        return self.request("POST", "/decode", json=body, headers={"Idem-Key": idem_key})

    def decode_status(self, job_id: str, cancel: bool = False) -> dict:
        params = {"id": job_id}
        if cancel:
            params["cancel"] = "1"
        return self.request("GET", "/decode/status", params=params)
