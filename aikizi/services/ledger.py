# aikizi/services/ledger.py
"""
Ledger de tokens.

Único camino de escritura sobre `entitlements.tokens_balance`. Cada mutación:
  - bloquea la fila del entitlement del usuario (SELECT ... FOR UPDATE),
  - comprueba idempotencia por (user_id, kind, idem_key),
  - actualiza el saldo con un UPDATE condicional,
  - inserta el asiento en `transactions`,
todo en la misma transacción de BD. O se confirma todo o nada.
"""

from __future__ import annotations

import calendar
import datetime as dt
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from aikizi.database import db
from aikizi.errors import ConfigurationError, InsufficientTokens, InvalidInput, NotFound
from aikizi.models import Entitlement, Plan, Transaction, TransactionKind, utcnow

log = logging.getLogger(__name__)

WELCOME_KEY = "welcome"
GRANT_KINDS = (
    TransactionKind.welcome_grant,
    TransactionKind.monthly_grant,
    TransactionKind.grant,
)


@dataclass(frozen=True)
class LedgerResult:
    balance: int
    replayed: bool = False


def kind_for_reason(reason: str) -> TransactionKind:
    r = (reason or "").strip().lower()
    if r in ("welcome", "signup", "welcome_grant"):
        return TransactionKind.welcome_grant
    if r in ("monthly", "monthly_grant", "renewal"):
        return TransactionKind.monthly_grant
    return TransactionKind.grant


def first_of_next_month(now: dt.datetime) -> dt.datetime:
    if now.month == 12:
        return dt.datetime(now.year + 1, 1, 1)
    return dt.datetime(now.year, now.month + 1, 1)


def add_month(d: dt.datetime) -> dt.datetime:
    year = d.year + (1 if d.month == 12 else 0)
    month = 1 if d.month == 12 else d.month + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return d.replace(year=year, month=month, day=day)


def seed_plans(free_tokens: int, pro_tokens: int) -> None:
    """Crea los planes free/pro si no existen."""
    for name, tokens in (("free", free_tokens), ("pro", pro_tokens)):
        exists = db.session.execute(select(Plan.id).where(Plan.name == name)).scalar()
        if exists is None:
            db.session.add(Plan(name=name, tokens_granted=int(tokens)))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()


class TokenLedger:

    # -----------------------------------------------------------
    # LECTURAS
    # -----------------------------------------------------------
    def get_entitlement(self, user_id: str) -> Optional[Entitlement]:
        return db.session.get(Entitlement, user_id)

    def get_balance(self, user_id: str) -> int:
        bal = db.session.execute(
            select(Entitlement.tokens_balance).where(Entitlement.user_id == user_id)
        ).scalar()
        return int(bal or 0)

    def list_transactions(self, user_id: str, limit: int = 50) -> List[Transaction]:
        """Historial del usuario, el más reciente primero."""
        limit = max(1, min(int(limit or 50), 200))
        return list(
            db.session.execute(
                select(Transaction)
                .where(Transaction.user_id == user_id)
                .order_by(Transaction.created_at.desc(), Transaction.id.desc())
                .limit(limit)
            ).scalars()
        )

    def has_transaction(self, user_id: str, kind: TransactionKind, idem_key: str) -> bool:
        return self._find(user_id, kind, idem_key) is not None

    def spent_amount(self, user_id: str, idem_key: str) -> int:
        """Tokens cobrados por el spend con esa clave (0 si no hubo spend)."""
        tx = self._find(user_id, TransactionKind.spend, idem_key)
        return -int(tx.amount) if tx is not None else 0

    def reconcile(self, user_id: str) -> Tuple[int, int]:
        """(suma de asientos, saldo actual). Deben coincidir."""
        total = db.session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.user_id == user_id
            )
        ).scalar()
        return int(total or 0), self.get_balance(user_id)

    # -----------------------------------------------------------
    # ALTA DE ENTITLEMENT
    # -----------------------------------------------------------
    def open_entitlement(self, user_id: str, plan_name: str = "free") -> Entitlement:
        """Crea el entitlement con saldo 0 si no existe (idempotente)."""
        ent = self.get_entitlement(user_id)
        if ent is not None:
            return ent

        plan = db.session.execute(select(Plan).where(Plan.name == plan_name)).scalar()
        if plan is None:
            raise ConfigurationError(f"Plan '{plan_name}' is not configured.")

        ent = Entitlement(
            user_id=user_id,
            plan_id=plan.id,
            tokens_balance=0,
            renews_at=first_of_next_month(utcnow()),
        )
        db.session.add(ent)
        try:
            db.session.commit()
            log.info("[ledger] entitlement creado user=%s plan=%s", user_id, plan_name)
        except IntegrityError:
            # otra petición concurrente lo creó primero
            db.session.rollback()
            ent = self.get_entitlement(user_id)
        return ent

    # -----------------------------------------------------------
    # MUTACIONES
    # -----------------------------------------------------------
    def spend(self, user_id: str, cost: int, idem_key: str) -> LedgerResult:
        if not idem_key:
            raise InvalidInput("idem key required")
        return self._post(
            user_id,
            TransactionKind.spend,
            cost,
            idem_key=idem_key,
            ref={"idem_key": idem_key},
        )

    def grant(
        self,
        user_id: str,
        amount: int,
        reason: str,
        idem_key: Optional[str] = None,
        ref: Optional[dict] = None,
    ) -> LedgerResult:
        kind = kind_for_reason(reason)
        if kind == TransactionKind.welcome_grant and idem_key is None:
            idem_key = WELCOME_KEY
        payload = {"reason": reason}
        payload.update(ref or {})
        return self._post(user_id, kind, amount, idem_key=idem_key, ref=payload)

    def refund(
        self,
        user_id: str,
        amount: int,
        reason: str,
        idem_key: Optional[str] = None,
    ) -> LedgerResult:
        ref = {"reason": reason}
        if idem_key:
            ref["idem_key"] = idem_key
        return self._post(user_id, TransactionKind.refund, amount, idem_key=idem_key, ref=ref)

    def refresh_monthly_grants(self, now: Optional[dt.datetime] = None) -> int:
        """Concede los tokens del plan a quien le tocó renovar. Devuelve cuántos."""
        now = now or utcnow()
        period = now.strftime("%Y%m")
        due = list(
            db.session.execute(
                select(Entitlement.user_id).where(
                    Entitlement.renews_at.is_not(None), Entitlement.renews_at <= now
                )
            ).scalars()
        )
        db.session.commit()

        processed = 0
        for user_id in due:
            ent = self.get_entitlement(user_id)
            if ent is None or ent.plan is None or ent.plan.tokens_granted <= 0:
                continue
            plan_name, tokens, renews_at = ent.plan.name, ent.plan.tokens_granted, ent.renews_at
            res = self._post(
                user_id,
                TransactionKind.monthly_grant,
                tokens,
                idem_key=f"monthly:{period}",
                ref={"period": period, "plan": plan_name},
                extra_values={"renews_at": add_month(renews_at)},
            )
            if not res.replayed:
                processed += 1

        log.info("[ledger] refresh mensual period=%s procesados=%s", period, processed)
        return processed

    # -----------------------------------------------------------
    # INTERNOS
    # -----------------------------------------------------------
    def _find(self, user_id: str, kind: TransactionKind, idem_key: str) -> Optional[Transaction]:
        return db.session.execute(
            select(Transaction).where(
                Transaction.user_id == user_id,
                Transaction.kind == kind.value,
                Transaction.idem_key == idem_key,
            )
        ).scalar()

    def _lock_entitlement(self, user_id: str) -> Optional[Entitlement]:
        # FOR UPDATE en Postgres; en SQLite el lock lo toma el propio UPDATE
        return db.session.execute(
            select(Entitlement)
            .where(Entitlement.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar()

    def _post(
        self,
        user_id: str,
        kind: TransactionKind,
        amount: int,
        idem_key: Optional[str] = None,
        ref: Optional[dict] = None,
        extra_values: Optional[dict] = None,
    ) -> LedgerResult:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidInput("amount must be a positive integer")

        session = db.session
        try:
            ent = self._lock_entitlement(user_id)
            if ent is None:
                session.rollback()
                if kind == TransactionKind.spend:
                    raise InsufficientTokens()
                raise NotFound("Entitlement not found.")

            if idem_key is not None and self._find(user_id, kind, idem_key) is not None:
                balance = int(ent.tokens_balance)
                session.rollback()
                log.info(
                    "[ledger] replay kind=%s user=%s idem=%s balance=%s",
                    kind.value, user_id, idem_key, balance,
                )
                return LedgerResult(balance=balance, replayed=True)

            delta = -amount if kind == TransactionKind.spend else amount
            now = utcnow()
            values = {"tokens_balance": Entitlement.tokens_balance + delta, "updated_at": now}
            if kind in GRANT_KINDS:
                values["last_granted_at"] = now
            values.update(extra_values or {})

            stmt = update(Entitlement).where(Entitlement.user_id == user_id)
            if kind == TransactionKind.spend:
                stmt = stmt.where(Entitlement.tokens_balance >= amount)
            res = session.execute(
                stmt.values(**values).execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                session.rollback()
                log.info("[ledger] saldo insuficiente user=%s cost=%s", user_id, amount)
                raise InsufficientTokens()

            session.add(
                Transaction(
                    user_id=user_id,
                    kind=kind.value,
                    amount=delta,
                    idem_key=idem_key,
                    ref=ref or {},
                    created_at=now,
                )
            )
            session.flush()
            new_balance = session.execute(
                select(Entitlement.tokens_balance).where(Entitlement.user_id == user_id)
            ).scalar_one()
            session.commit()
        except IntegrityError:
            session.rollback()
            if idem_key is None:
                raise
            # carrera: otra petición con la misma clave confirmó primero
            balance = self.get_balance(user_id)
            log.info(
                "[ledger] replay (carrera) kind=%s user=%s idem=%s balance=%s",
                kind.value, user_id, idem_key, balance,
            )
            return LedgerResult(balance=balance, replayed=True)
        except Exception:
            session.rollback()
            raise

        log.info(
            "[ledger] %s user=%s amount=%s idem=%s balance=%s",
            kind.value, user_id, delta, idem_key, new_balance,
        )
        return LedgerResult(balance=int(new_balance))
