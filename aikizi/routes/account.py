# aikizi/routes/account.py
from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify

from aikizi.services import get_services
from aikizi.services.auth import require_auth

bp = Blueprint("account", __name__, url_prefix="/account")


# ---------------------------------------------------------
# POST /account/ensure
#   Idempotente: User + Profile + Entitlement + bienvenida (una vez).
#   Respuesta: {"ok": true, "userId": "...", "created": bool}
# ---------------------------------------------------------
@bp.post("/ensure")
@require_auth
def ensure_account():
    services = get_services()
    principal, created = services.resolver.ensure_account(
        g.auth,
        services.ledger,
        welcome_tokens=int(current_app.config.get("WELCOME_TOKENS", 0)),
    )
    current_app.logger.info(
        "ENSURE_ACCOUNT auth_id=%s user=%s created=%s", principal.auth_id, principal.principal_id, created
    )
    return jsonify({"ok": True, "userId": principal.principal_id, "created": created})
