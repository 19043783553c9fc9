# aikizi/routes/cron.py
from __future__ import annotations

import hmac

from flask import Blueprint, current_app, jsonify, request

from aikizi.errors import ConfigurationError, Unauthenticated
from aikizi.services import get_services
from aikizi.services.auth import extract_token

bp = Blueprint("cron", __name__, url_prefix="/cron")


def _check_cron_secret() -> None:
    secret = current_app.config.get("CRON_SECRET")
    if not secret:
        raise ConfigurationError("CRON_SECRET is not configured")
    token = extract_token() or ""
    if not hmac.compare_digest(token.encode(), secret.encode()):
        raise Unauthenticated("Invalid cron secret.")


# ---------------------------------------------------------
# POST /cron/refresh-tokens  (Authorization: Bearer <CRON_SECRET>)
# ---------------------------------------------------------
@bp.post("/refresh-tokens")
def refresh_tokens():
    _check_cron_secret()
    n = get_services().ledger.refresh_monthly_grants()
    current_app.logger.info("CRON_REFRESH_TOKENS granted=%s", n)
    return jsonify({"ok": True, "granted": n})


# ---------------------------------------------------------
# POST /cron/recover-jobs
# ---------------------------------------------------------
@bp.post("/recover-jobs")
def recover_jobs():
    _check_cron_secret()
    out = get_services().coordinator.recover_stale_jobs()
    current_app.logger.info("CRON_RECOVER_JOBS %s", out)
    return jsonify({"ok": True, **out})
