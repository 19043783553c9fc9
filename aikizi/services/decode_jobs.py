# aikizi/services/decode_jobs.py
"""
Coordinador de jobs de decode.

  submit:  validar -> spend (idempotente) -> job en 'queued'
  run:     queued -> running -> normalizing -> saving -> completed
                      |            |             |
                      +------------+-------------+--> failed (+ refund)
  cancel:  queued -> canceled (+ refund); en running solo marca
           cancel_requested y la llamada al proveedor se aborta.

Cada transición es un UPDATE condicional (WHERE status IN ...), así dos
procesos no pueden mover el mismo job a la vez. El job se marca terminal
ANTES de reembolsar; si el reembolso falla, `recover_stale_jobs` lo repite
(el refund es idempotente por la idem_key del job).
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import os
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from aikizi.database import db
from aikizi.errors import (
    InvalidInput,
    InvalidTransition,
    NotFound,
    ProviderError,
    ServiceError,
    UnparsableResponse,
)
from aikizi.models import DecodeJob, JobStatus, Transaction, TransactionKind, utcnow
from aikizi.services import normalizer
from aikizi.services.assets import AssetStore, ImagePayload
from aikizi.services.ledger import TokenLedger
from aikizi.services.providers import ImageInput, ModelId, ProviderGateway, resolve_model

log = logging.getLogger(__name__)

ALLOWED: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.queued: frozenset({JobStatus.running, JobStatus.canceled}),
    JobStatus.running: frozenset({JobStatus.normalizing, JobStatus.failed}),
    JobStatus.normalizing: frozenset({JobStatus.saving, JobStatus.failed}),
    JobStatus.saving: frozenset({JobStatus.completed, JobStatus.failed}),
}

IN_FLIGHT = (JobStatus.running, JobStatus.normalizing, JobStatus.saving)

CANCELED_MESSAGE = "Decode was canceled. Your token was refunded."
STALE_MESSAGE = "Decode did not finish. Your token was refunded."


@dataclass
class SubmitResult:
    job: DecodeJob
    created: bool
    balance: int


class DecodeJobCoordinator:
    def __init__(
        self,
        ledger: TokenLedger,
        gateway: ProviderGateway,
        store: AssetStore,
        cost: int = 1,
        timeout: float = 60.0,
        cancel_poll: float = 0.5,
        stale_seconds: int = 300,
    ) -> None:
        self.ledger = ledger
        self.gateway = gateway
        self.store = store
        self.cost = cost
        self.timeout = timeout
        self.cancel_poll = cancel_poll
        self.stale_seconds = stale_seconds

    # -----------------------------------------------------------
    # CONSULTAS
    # -----------------------------------------------------------
    def get_job(self, user_id: str, job_id: str) -> DecodeJob:
        job = db.session.get(DecodeJob, job_id, populate_existing=True) if job_id else None
        if job is None or job.user_id != user_id:
            raise NotFound("Job not found.")
        return job

    def list_jobs(self, user_id: str, limit: int = 20) -> List[DecodeJob]:
        limit = max(1, min(int(limit or 20), 100))
        return list(
            db.session.execute(
                select(DecodeJob)
                .where(DecodeJob.user_id == user_id)
                .order_by(DecodeJob.created_at.desc())
                .limit(limit)
            ).scalars()
        )

    def _find_by_idem(self, user_id: str, idem_key: str) -> Optional[DecodeJob]:
        return db.session.execute(
            select(DecodeJob).where(DecodeJob.user_id == user_id, DecodeJob.idem_key == idem_key)
        ).scalar()

    def _reload(self, job_id: str) -> DecodeJob:
        return db.session.get(DecodeJob, job_id, populate_existing=True)

    # -----------------------------------------------------------
    # SUBMIT
    # -----------------------------------------------------------
    def submit(
        self,
        user_id: str,
        payload: ImagePayload,
        model: ModelId,
        idem_key: str,
    ) -> SubmitResult:
        """
        Cobra y crea el job. Con saldo insuficiente lanza InsufficientTokens
        y NO se crea job. Una clave repetida devuelve el job existente.
        """
        if not idem_key:
            raise InvalidInput("Idem-Key header is required")
        self.gateway.ensure_configured(model)

        existing = self._find_by_idem(user_id, idem_key)
        if existing is not None:
            log.info("[decode] submit duplicado user=%s idem=%s job=%s", user_id, idem_key, existing.id)
            return SubmitResult(existing, False, self.ledger.get_balance(user_id))

        # primero el disco, luego el cobro
        local_path = self.store.save(payload.data, payload.mime_type) if payload.data else None
        try:
            spent = self.ledger.spend(user_id, self.cost, idem_key)
        except ServiceError:
            self._discard(local_path)
            raise

        job = DecodeJob(
            user_id=user_id,
            idem_key=idem_key,
            model=model.id,
            status=JobStatus.queued.value,
            local_path=local_path,
            mime_type=payload.mime_type,
            image_url=payload.url,
        )
        db.session.add(job)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            self._discard(local_path)
            existing = self._find_by_idem(user_id, idem_key)
            if existing is None:
                raise
            return SubmitResult(existing, False, self.ledger.get_balance(user_id))

        log.info(
            "[decode] job creado id=%s user=%s model=%s balance=%s",
            job.id, user_id, model.id, spent.balance,
        )
        return SubmitResult(job, True, spent.balance)

    @staticmethod
    def _discard(local_path: Optional[str]) -> None:
        if local_path and os.path.exists(local_path):
            os.remove(local_path)

    # -----------------------------------------------------------
    # RUN
    # -----------------------------------------------------------
    def run(self, job_id: str) -> DecodeJob:
        """Procesa el job hasta un estado terminal (bloqueante)."""
        return asyncio.run(self._run(job_id))

    async def _run(self, job_id: str) -> DecodeJob:
        job = self._reload(job_id)
        if job is None:
            raise NotFound("Job not found.")
        if job.job_status != JobStatus.queued:
            log.info("[decode] job=%s ya en estado=%s, nada que hacer", job_id, job.status)
            return job

        # si perdemos esta carrera el job fue cancelado o lo tomó otro worker
        if not self._transition(job_id, JobStatus.running, from_=(JobStatus.queued,), attempts=job.attempts + 1):
            return self._reload(job_id)

        try:
            model = resolve_model(job.model)
            image = self._image_for(job)
            raw = await self._call_provider(job_id, image, model)

            self._advance(job_id, JobStatus.running, JobStatus.normalizing)
            result = normalizer.parse(raw)

            self._advance(job_id, JobStatus.normalizing, JobStatus.saving)
            self._advance(job_id, JobStatus.saving, JobStatus.completed, result_json=result.to_dict())
            log.info("[decode] job=%s completado", job_id)
        except ServiceError as e:
            self._fail(job_id, e)
        except Exception as e:
            log.exception("[decode] job=%s error inesperado: %s", job_id, e)
            self._fail(job_id, ServiceError())

        return self._reload(job_id)

    async def _call_provider(self, job_id: str, image: ImageInput, model: ModelId) -> str:
        cancel_event = asyncio.Event()
        watcher = asyncio.ensure_future(self._watch_cancel(job_id, cancel_event))
        try:
            return await self.gateway.decode(image, model, self.timeout, cancel_event)
        finally:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)

    async def _watch_cancel(self, job_id: str, event: asyncio.Event) -> None:
        while not event.is_set():
            if self._cancel_requested(job_id):
                log.info("[decode] job=%s cancelación solicitada", job_id)
                event.set()
                return
            await asyncio.sleep(self.cancel_poll)

    @staticmethod
    def _cancel_requested(job_id: str) -> bool:
        # conexión aparte: no tocar la sesión del job en curso
        with db.engine.connect() as conn:
            return bool(
                conn.execute(
                    select(DecodeJob.cancel_requested).where(DecodeJob.id == job_id)
                ).scalar()
            )

    def _image_for(self, job: DecodeJob) -> ImageInput:
        if job.local_path:
            return ImageInput.from_bytes(self.store.load(job.local_path), job.mime_type)
        return ImageInput(url=job.image_url)

    # -----------------------------------------------------------
    # CANCEL
    # -----------------------------------------------------------
    def cancel(self, user_id: str, job_id: str) -> DecodeJob:
        job = self.get_job(user_id, job_id)

        if job.job_status == JobStatus.queued:
            if self._transition(
                job_id,
                JobStatus.canceled,
                from_=(JobStatus.queued,),
                error=CANCELED_MESSAGE,
                error_code="CANCELED",
            ):
                log.info("[decode] job=%s cancelado en cola", job_id)
                self._refund(self._reload(job_id), "canceled")
                return self._reload(job_id)
            job = self._reload(job_id)

        if job.job_status == JobStatus.running and not job.cancel_requested:
            db.session.execute(
                update(DecodeJob)
                .where(DecodeJob.id == job_id, DecodeJob.status == JobStatus.running.value)
                .values(cancel_requested=True, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            db.session.commit()
            log.info("[decode] job=%s cancelación pedida (running)", job_id)

        return self._reload(job_id)

    # -----------------------------------------------------------
    # TRANSICIONES
    # -----------------------------------------------------------
    def _transition(
        self,
        job_id: str,
        to: JobStatus,
        from_: Iterable[JobStatus],
        where: Iterable = (),
        **values,
    ) -> bool:
        sources = tuple(from_)
        for src in sources:
            if to not in ALLOWED.get(src, frozenset()):
                raise InvalidTransition(f"{src.value} -> {to.value}")

        res = db.session.execute(
            update(DecodeJob)
            .where(
                DecodeJob.id == job_id,
                DecodeJob.status.in_([s.value for s in sources]),
                *where,
            )
            .values(status=to.value, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        moved = res.rowcount == 1
        if moved:
            log.debug("[decode] job=%s %s -> %s", job_id, "/".join(s.value for s in sources), to.value)
        return moved

    def _advance(self, job_id: str, src: JobStatus, to: JobStatus, **values) -> None:
        if not self._transition(job_id, to, from_=(src,), **values):
            raise InvalidTransition(f"job {job_id} is no longer {src.value}")

    def _fail(self, job_id: str, err: ServiceError) -> None:
        if isinstance(err, ProviderError):
            log.warning("[decode] job=%s proveedor falló code=%s detail=%s", job_id, err.code, err.detail)
        elif isinstance(err, UnparsableResponse):
            log.warning("[decode] job=%s respuesta ilegible preview=%r", job_id, err.preview)
        else:
            log.warning("[decode] job=%s falló code=%s msg=%s", job_id, err.code, err.message)

        self._transition(
            job_id,
            JobStatus.failed,
            from_=IN_FLIGHT,
            error=err.message,
            error_code=err.code,
        )
        job = self._reload(job_id)
        if job is not None and job.job_status in (JobStatus.failed, JobStatus.canceled):
            self._refund(job, (job.error_code or "failed").lower())

    def _refund(self, job: DecodeJob, reason: str) -> None:
        amount = self.ledger.spent_amount(job.user_id, job.idem_key)
        if amount <= 0:
            return
        res = self.ledger.refund(job.user_id, amount, f"decode_{reason}", idem_key=job.idem_key)
        if not res.replayed:
            log.info("[decode] refund job=%s amount=%s balance=%s", job.id, amount, res.balance)

    # -----------------------------------------------------------
    # RECUPERACIÓN
    # -----------------------------------------------------------
    def recover_stale_jobs(self, now: Optional[dt.datetime] = None) -> dict:
        """
        - jobs en vuelo sin avanzar desde hace STALE_JOB_SECONDS -> failed + refund
        - jobs failed/canceled con spend pero sin refund -> refund
        """
        now = now or utcnow()
        cutoff = now - dt.timedelta(seconds=self.stale_seconds)

        stale_ids = list(
            db.session.execute(
                select(DecodeJob.id).where(
                    DecodeJob.status.in_([s.value for s in IN_FLIGHT]),
                    DecodeJob.updated_at < cutoff,
                )
            ).scalars()
        )
        db.session.commit()

        failed = 0
        for job_id in stale_ids:
            if self._transition(
                job_id,
                JobStatus.failed,
                from_=IN_FLIGHT,
                where=(DecodeJob.updated_at < cutoff,),
                error=STALE_MESSAGE,
                error_code="STALE_JOB",
            ):
                failed += 1

        def _tx_exists(kind: TransactionKind):
            return (
                select(Transaction.id)
                .where(
                    Transaction.user_id == DecodeJob.user_id,
                    Transaction.kind == kind.value,
                    Transaction.idem_key == DecodeJob.idem_key,
                )
                .exists()
            )

        pending = list(
            db.session.execute(
                select(DecodeJob).where(
                    DecodeJob.status.in_([JobStatus.failed.value, JobStatus.canceled.value]),
                    _tx_exists(TransactionKind.spend),
                    ~_tx_exists(TransactionKind.refund),
                )
            ).scalars()
        )
        for job in pending:
            self._refund(job, (job.error_code or "recovered").lower())

        log.info("[decode] recover: stale=%s reembolsados=%s", failed, len(pending))
        return {"failed": failed, "refunded": len(pending)}
