# aikizi/routes/wallet.py
from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from aikizi.errors import InvalidInput
from aikizi.models import Role
from aikizi.routes import json_body
from aikizi.services import get_services
from aikizi.services.auth import require_principal

bp = Blueprint("wallet", __name__, url_prefix="/wallet")


def _int_field(body: dict, name: str) -> int:
    value = body.get(name)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidInput(f"{name} must be a positive integer")
    return value


# ---------------------------------------------------------
# GET /wallet/balance -> {"ok": true, "balance": int, "plan": "free"}
# ---------------------------------------------------------
@bp.get("/balance")
@require_principal()
def balance():
    ledger = get_services().ledger
    uid = g.principal.principal_id
    ent = ledger.get_entitlement(uid)
    bal = int(ent.tokens_balance) if ent else 0
    plan = ent.plan.name if ent is not None and ent.plan is not None else "free"

    current_app.logger.info("WALLET_BALANCE user=%s balance=%s plan=%s", uid, bal, plan)
    return jsonify(
        {
            "ok": True,
            "balance": bal,
            "plan": plan,
            "renewsAt": ent.renews_at.isoformat() if ent is not None and ent.renews_at else None,
        }
    )


# ---------------------------------------------------------
# GET /wallet/transactions?limit=50 (máx 200, más reciente primero)
# ---------------------------------------------------------
@bp.get("/transactions")
@require_principal()
def transactions():
    try:
        limit = int(request.args.get("limit", 50))
    except ValueError:
        raise InvalidInput("limit must be an integer")
    items = get_services().ledger.list_transactions(g.principal.principal_id, limit)
    return jsonify({"ok": True, "items": [t.to_dict() for t in items]})


# ---------------------------------------------------------
# POST /wallet/spend  body {cost}, header Idem-Key (obligatorio)
# ---------------------------------------------------------
@bp.post("/spend")
@require_principal()
def spend():
    idem = (request.headers.get("Idem-Key") or "").strip()
    if not idem:
        return jsonify({"ok": False, "error": "Idem-Key header is required", "code": "IDEM_KEY_REQUIRED"}), 400

    body = json_body()
    cost = _int_field(body, "cost")
    res = get_services().ledger.spend(g.principal.principal_id, cost, idem)
    return jsonify({"ok": True, "balance": res.balance, "replayed": res.replayed})


# ---------------------------------------------------------
# POST /wallet/grant  body {userId, amount, reason}  (solo admin)
# ---------------------------------------------------------
@bp.post("/grant")
@require_principal(Role.admin)
def grant():
    body = json_body()
    user_id = str(body.get("userId") or "").strip()
    if not user_id:
        raise InvalidInput("userId is required")
    amount = _int_field(body, "amount")
    reason = str(body.get("reason") or "admin_grant")
    idem = (request.headers.get("Idem-Key") or "").strip() or None

    res = get_services().ledger.grant(
        user_id, amount, reason, idem_key=idem, ref={"by": g.principal.principal_id}
    )
    current_app.logger.info(
        "ADMIN_GRANT by=%s user=%s amount=%s balance=%s", g.principal.principal_id, user_id, amount, res.balance
    )
    return jsonify({"ok": True, "balance": res.balance, "replayed": res.replayed})
