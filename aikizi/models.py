# aikizi/models.py
from __future__ import annotations

import datetime as dt
import uuid
from enum import Enum

from aikizi.database import db


def utcnow() -> dt.datetime:
    # SQLite sin TZ: guardamos UTC naive
    return dt.datetime.now(tz=dt.timezone.utc).replace(tzinfo=None)


def gen_id() -> str:
    """Genera un ID único de 32 caracteres hex."""
    return uuid.uuid4().hex


# ---------- Enums ----------
class Role(str, Enum):
    viewer = "viewer"
    pro = "pro"
    publisher = "publisher"
    admin = "admin"


class TransactionKind(str, Enum):
    welcome_grant = "welcome_grant"
    monthly_grant = "monthly_grant"
    spend = "spend"
    grant = "grant"
    refund = "refund"


class JobStatus(str, Enum):
    queued = "queued"
    running = "running"
    normalizing = "normalizing"
    saving = "saving"
    completed = "completed"
    failed = "failed"
    canceled = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.completed, JobStatus.failed, JobStatus.canceled)


# ---------------------------------------------------------
# PRINCIPAL
# ---------------------------------------------------------
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.String(32), primary_key=True, default=gen_id)
    # subject del proveedor de identidad (claim "sub")
    auth_id = db.Column(db.String(255), unique=True, nullable=False, index=True)
    role = db.Column(db.String(16), nullable=False, default=Role.viewer.value)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<User id={self.id} auth_id={self.auth_id} role={self.role}>"


class Profile(db.Model):
    __tablename__ = "profiles"

    user_id = db.Column(
        db.String(32), db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    handle = db.Column(db.String(64), unique=True, nullable=False, index=True)
    display_name = db.Column(db.String(255), nullable=True)
    is_public = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)


# ---------------------------------------------------------
# PLANES Y SALDO
# ---------------------------------------------------------
class Plan(db.Model):
    __tablename__ = "plans"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    name = db.Column(db.String(32), unique=True, nullable=False)
    tokens_granted = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)


class Entitlement(db.Model):
    """Saldo de tokens del usuario. Solo lo modifica TokenLedger."""

    __tablename__ = "entitlements"
    __table_args__ = (
        db.CheckConstraint("tokens_balance >= 0", name="tokens_balance_non_negative"),
    )

    user_id = db.Column(
        db.String(32), db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    plan_id = db.Column(db.Integer, db.ForeignKey("plans.id"), nullable=True)
    tokens_balance = db.Column(db.Integer, nullable=False, default=0)
    renews_at = db.Column(db.DateTime, nullable=True)
    last_granted_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    plan = db.relationship("Plan")

    def __repr__(self) -> str:
        return f"<Entitlement user={self.user_id} balance={self.tokens_balance}>"


class Transaction(db.Model):
    """Asiento append-only del ledger (importe con signo)."""

    __tablename__ = "transactions"
    __table_args__ = (
        db.UniqueConstraint("user_id", "kind", "idem_key", name="uq_transactions_idempotency"),
        db.Index("ix_transactions_user_created", "user_id", "created_at"),
    )

    id = db.Column(db.String(32), primary_key=True, default=gen_id)
    user_id = db.Column(
        db.String(32), db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    kind = db.Column(db.String(32), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    idem_key = db.Column(db.String(255), nullable=True)
    ref = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "amount": self.amount,
            "idemKey": self.idem_key,
            "ref": self.ref or {},
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


# ---------------------------------------------------------
# JOBS DE DECODE
# ---------------------------------------------------------
class DecodeJob(db.Model):
    __tablename__ = "decode_jobs"
    __table_args__ = (
        db.UniqueConstraint("user_id", "idem_key", name="uq_decode_jobs_idem"),
        db.Index("ix_decode_jobs_status_created", "status", "created_at"),
    )

    id = db.Column(db.String(32), primary_key=True, default=gen_id)
    user_id = db.Column(
        db.String(32), db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    idem_key = db.Column(db.String(255), nullable=False)
    model = db.Column(db.String(64), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=JobStatus.queued.value)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    cancel_requested = db.Column(db.Boolean, nullable=False, default=False)

    # imagen: archivo local (base64 subido) o URL remota
    local_path = db.Column(db.String(1024), nullable=True)
    mime_type = db.Column(db.String(64), nullable=True)
    image_url = db.Column(db.String(2048), nullable=True)

    result_json = db.Column(db.JSON, nullable=True)
    error = db.Column(db.Text, nullable=True)
    error_code = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def job_status(self) -> JobStatus:
        return JobStatus(self.status)

    def __repr__(self) -> str:
        return f"<DecodeJob id={self.id} user={self.user_id} status={self.status}>"

    def to_status(self) -> dict:
        out = {"status": self.status}
        if self.status == JobStatus.completed.value and self.result_json is not None:
            out["result"] = self.result_json
        if self.status in (JobStatus.failed.value, JobStatus.canceled.value) and self.error:
            out["error"] = self.error
            out["code"] = self.error_code
        return out

    def to_dict(self) -> dict:
        base = {
            "id": self.id,
            "model": self.model,
            "attempts": self.attempts,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
        base.update(self.to_status())
        return base
