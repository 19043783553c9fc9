"""
Tests del coordinador de jobs: máquina de estados, reembolsos y cancelación.
"""

import base64
import datetime as dt
import os

import pytest

from aikizi.database import db
from aikizi.errors import InsufficientTokens, InvalidTransition, NotFound, ProviderRejected
from aikizi.models import DecodeJob, JobStatus, Transaction, TransactionKind
from aikizi.services.assets import ImagePayload
from aikizi.services.decode_jobs import IN_FLIGHT
from aikizi.services.providers import MODELS

from conftest import PNG_B64

GEMINI = MODELS["gemini-2.5-flash"]


def _payload():
    return ImagePayload(data=base64.b64decode(PNG_B64), mime_type="image/png")


def _ledger_rows(user_id, idem_key):
    rows = (
        db.session.query(Transaction)
        .filter(Transaction.user_id == user_id, Transaction.idem_key == idem_key)
        .all()
    )
    return sorted(r.kind for r in rows)


class TestScenarios:
    def test_happy_path(self, services, account, gateway):
        principal, _ = account(welcome=5)
        uid = principal.principal_id

        sub = services.coordinator.submit(uid, _payload(), GEMINI, "idem-happy")
        assert sub.created
        assert sub.job.status == JobStatus.queued.value
        assert sub.balance == 4

        job = services.coordinator.run(sub.job.id)

        assert job.status == JobStatus.completed.value
        assert job.attempts == 1
        assert services.ledger.get_balance(uid) == 4
        assert job.result_json == {
            "styleCodes": ["--sref 123"],
            "tags": ["minimal"],
            "subjects": ["shape"],
            "prompts": {"story": "a", "mix": "b", "expand": "c", "sound": "d"},
        }
        assert _ledger_rows(uid, "idem-happy") == ["spend"]
        assert gateway.calls == 1

    def test_insufficient_balance_creates_no_job(self, services, account, gateway):
        principal, _ = account(welcome=0)
        uid = principal.principal_id

        with pytest.raises(InsufficientTokens):
            services.coordinator.submit(uid, _payload(), GEMINI, "idem-broke")

        assert db.session.query(DecodeJob).filter(DecodeJob.user_id == uid).count() == 0
        assert services.ledger.get_balance(uid) == 0
        assert gateway.calls == 0

    def test_provider_timeout_refunds(self, services, account, gateway):
        principal, _ = account(welcome=5)
        uid = principal.principal_id
        gateway.delay = 5

        sub = services.coordinator.submit(uid, _payload(), GEMINI, "idem-slow")
        job = services.coordinator.run(sub.job.id)

        assert job.status == JobStatus.failed.value
        assert job.error_code == "PROVIDER_TIMEOUT"
        assert "timed out" in job.error
        assert services.ledger.get_balance(uid) == 5
        assert _ledger_rows(uid, "idem-slow") == ["refund", "spend"]

    def test_cancel_while_queued(self, services, account, gateway):
        principal, _ = account(welcome=5)
        uid = principal.principal_id

        sub = services.coordinator.submit(uid, _payload(), GEMINI, "idem-cancel")
        job = services.coordinator.cancel(uid, sub.job.id)
        assert job.status == JobStatus.canceled.value
        assert services.ledger.get_balance(uid) == 5

        job = services.coordinator.run(sub.job.id)
        assert job.status == JobStatus.canceled.value
        assert gateway.calls == 0
        assert _ledger_rows(uid, "idem-cancel") == ["refund", "spend"]

        # cancelar de nuevo no reembolsa otra vez
        services.coordinator.cancel(uid, sub.job.id)
        assert services.ledger.get_balance(uid) == 5

    def test_duplicate_submission(self, services, account, gateway):
        principal, _ = account(welcome=5)
        uid = principal.principal_id

        first = services.coordinator.submit(uid, _payload(), GEMINI, "idem-dup")
        second = services.coordinator.submit(uid, _payload(), GEMINI, "idem-dup")

        assert first.created and not second.created
        assert first.job.id == second.job.id
        assert first.balance == second.balance == 4
        assert _ledger_rows(uid, "idem-dup") == ["spend"]

    def test_unparsable_response_refunds_without_leaking(self, services, account, gateway):
        principal, _ = account(welcome=5)
        uid = principal.principal_id
        gateway.reply = "Sorry, I cannot analyze this SECRET-RAW-TEXT."

        sub = services.coordinator.submit(uid, _payload(), GEMINI, "idem-garbage")
        job = services.coordinator.run(sub.job.id)

        assert job.status == JobStatus.failed.value
        assert job.error_code == "UNPARSABLE_RESPONSE"
        assert "SECRET-RAW-TEXT" not in job.error
        assert services.ledger.get_balance(uid) == 5

    def test_provider_rejected_refunds(self, services, account, gateway):
        principal, _ = account(welcome=5)
        uid = principal.principal_id
        gateway.error = ProviderRejected("gemini http 400: bad image")

        sub = services.coordinator.submit(uid, _payload(), GEMINI, "idem-reject")
        job = services.coordinator.run(sub.job.id)

        assert job.error_code == "PROVIDER_REJECTED"
        assert "bad image" not in job.error
        assert services.ledger.get_balance(uid) == 5

    def test_unexpected_error_fails_job(self, services, account, gateway):
        principal, _ = account(welcome=5)
        uid = principal.principal_id
        gateway.error = RuntimeError("boom")

        sub = services.coordinator.submit(uid, _payload(), GEMINI, "idem-boom")
        job = services.coordinator.run(sub.job.id)

        assert job.status == JobStatus.failed.value
        assert job.error_code == "INTERNAL_ERROR"
        assert services.ledger.get_balance(uid) == 5

    def test_cancel_while_running_aborts_and_refunds(self, services, account, gateway):
        principal, _ = account(welcome=5)
        uid = principal.principal_id
        sub = services.coordinator.submit(uid, _payload(), GEMINI, "idem-running")

        gateway.delay = 5
        gateway.on_call = lambda: services.coordinator.cancel(uid, sub.job.id)
        job = services.coordinator.run(sub.job.id)

        assert job.status == JobStatus.failed.value
        assert job.error_code == "CANCELED"
        assert job.cancel_requested
        assert services.ledger.get_balance(uid) == 5
        assert _ledger_rows(uid, "idem-running") == ["refund", "spend"]


    def test_storage_failure_charges_nothing(self, services, account, monkeypatch):
        principal, _ = account(welcome=5)
        uid = principal.principal_id

        def disk_full(data, mime_type):
            raise OSError("No space left on device")

        monkeypatch.setattr(services.coordinator.store, "save", disk_full)
        with pytest.raises(OSError):
            services.coordinator.submit(uid, _payload(), GEMINI, "idem-disk")

        services.coordinator.recover_stale_jobs()
        assert services.ledger.get_balance(uid) == 5
        assert _ledger_rows(uid, "idem-disk") == []
        assert db.session.query(DecodeJob).filter(DecodeJob.user_id == uid).count() == 0

    def test_insufficient_balance_leaves_no_file(self, services, account):
        principal, _ = account(welcome=0)

        with pytest.raises(InsufficientTokens):
            services.coordinator.submit(principal.principal_id, _payload(), GEMINI, "idem-nofile")

        folder = services.coordinator.store.folder
        assert not os.path.isdir(folder) or os.listdir(folder) == []


class TestStateMachine:
    def test_invalid_transition_rejected(self, services, account):
        principal, _ = account(welcome=5)
        sub = services.coordinator.submit(principal.principal_id, _payload(), GEMINI, "idem-sm")

        with pytest.raises(InvalidTransition):
            services.coordinator._transition(sub.job.id, JobStatus.completed, from_=(JobStatus.queued,))

    def test_terminal_states_are_immutable(self, services, account):
        principal, _ = account(welcome=5)
        uid = principal.principal_id
        sub = services.coordinator.submit(uid, _payload(), GEMINI, "idem-final")
        services.coordinator.run(sub.job.id)

        assert not services.coordinator._transition(sub.job.id, JobStatus.failed, from_=IN_FLIGHT)
        job = services.coordinator.cancel(uid, sub.job.id)
        assert job.status == JobStatus.completed.value
        assert services.ledger.get_balance(uid) == 4

    def test_other_users_job_is_not_found(self, services, account):
        owner, _ = account("auth-owner", welcome=5)
        other, _ = account("auth-other", welcome=5)
        sub = services.coordinator.submit(owner.principal_id, _payload(), GEMINI, "idem-own")

        with pytest.raises(NotFound):
            services.coordinator.get_job(other.principal_id, sub.job.id)
        with pytest.raises(NotFound):
            services.coordinator.cancel(other.principal_id, sub.job.id)

    def test_list_jobs(self, services, account):
        principal, _ = account(welcome=5)
        uid = principal.principal_id
        services.coordinator.submit(uid, _payload(), GEMINI, "a")
        services.coordinator.submit(uid, _payload(), GEMINI, "b")
        assert len(services.coordinator.list_jobs(uid)) == 2


class TestRecovery:
    def test_stale_running_job_failed_and_refunded(self, services, account):
        principal, _ = account(welcome=5)
        uid = principal.principal_id
        sub = services.coordinator.submit(uid, _payload(), GEMINI, "idem-stale")

        job = db.session.get(DecodeJob, sub.job.id)
        job.status = JobStatus.running.value
        job.updated_at = dt.datetime(2020, 1, 1)
        db.session.commit()

        out = services.coordinator.recover_stale_jobs()

        assert out["failed"] == 1
        job = services.coordinator.get_job(uid, sub.job.id)
        assert job.status == JobStatus.failed.value
        assert job.error_code == "STALE_JOB"
        assert services.ledger.get_balance(uid) == 5

    def test_failed_job_missing_refund_is_repaired(self, services, account):
        principal, _ = account(welcome=5)
        uid = principal.principal_id
        sub = services.coordinator.submit(uid, _payload(), GEMINI, "idem-crash")

        # caída entre "marcar failed" y "reembolsar"
        job = db.session.get(DecodeJob, sub.job.id)
        job.status = JobStatus.failed.value
        job.error_code = "PROVIDER_UNAVAILABLE"
        db.session.commit()
        assert services.ledger.get_balance(uid) == 4

        out = services.coordinator.recover_stale_jobs()
        assert out["refunded"] == 1
        assert services.ledger.get_balance(uid) == 5

        assert services.coordinator.recover_stale_jobs()["refunded"] == 0

    def test_fresh_running_job_untouched(self, services, account):
        principal, _ = account(welcome=5)
        sub = services.coordinator.submit(principal.principal_id, _payload(), GEMINI, "idem-fresh")
        job = db.session.get(DecodeJob, sub.job.id)
        job.status = JobStatus.running.value
        db.session.commit()

        assert services.coordinator.recover_stale_jobs()["failed"] == 0
        assert [r.kind for r in db.session.query(Transaction).filter(
            Transaction.kind == TransactionKind.refund.value
        )] == []
