# aikizi/routes/decode.py
from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from aikizi.celery_app import enqueue_decode
from aikizi.errors import InvalidInput
from aikizi.models import JobStatus
from aikizi.routes import json_body
from aikizi.services import get_services
from aikizi.services.assets import parse_image_payload
from aikizi.services.auth import require_principal
from aikizi.services.providers import resolve_model

bp = Blueprint("decode", __name__, url_prefix="/decode")

# status HTTP para un job fallido devuelto en modo sync
FAILED_STATUS = {
    "PROVIDER_TIMEOUT": 504,
    "CANCELED": 409,
    "STALE_JOB": 504,
    "INTERNAL_ERROR": 500,
    "SERVER_CONFIG_ERROR": 500,
}


def _idem_key() -> str:
    return (request.headers.get("Idem-Key") or request.headers.get("X-Idempotency-Key") or "").strip()


# ---------------------------------------------------------
# POST /decode
#   body:   {"image": base64|dataURL|url, "mimeType"?, "model"?}
#   header: Idem-Key
#   sync  -> {"ok": true, "result": {...}, "jobId", "balance"}
#   async -> {"ok": true, "jobId", "status", "balance"}  (202)
# ---------------------------------------------------------
@bp.post("")
@require_principal()
def submit_decode():
    cfg = current_app.config
    body = json_body()

    idem = _idem_key()
    if not idem:
        return jsonify({"ok": False, "error": "Idem-Key header is required", "code": "IDEM_KEY_REQUIRED"}), 400

    # validar todo ANTES de cobrar
    model = resolve_model(body.get("model") or cfg.get("DEFAULT_DECODE_MODEL"))
    payload = parse_image_payload(body, int(cfg.get("MAX_UPLOAD_MB", 25)))

    coordinator = get_services().coordinator
    uid = g.principal.principal_id
    sub = coordinator.submit(uid, payload, model, idem)
    job = sub.job

    if sub.created:
        if cfg.get("DECODE_MODE") == "async":
            enqueue_decode(job.id)
            job = coordinator.get_job(uid, job.id)
        else:
            job = coordinator.run(job.id)

    current_app.logger.info(
        "DECODE user=%s job=%s status=%s created=%s", uid, job.id, job.status, sub.created
    )

    if job.status == JobStatus.completed.value:
        return jsonify({"ok": True, "jobId": job.id, "result": job.result_json, "balance": sub.balance})

    if job.job_status.is_terminal:
        status = FAILED_STATUS.get(job.error_code or "", 502)
        return (
            jsonify({"ok": False, "jobId": job.id, "error": job.error, "code": job.error_code}),
            status,
        )

    return jsonify({"ok": True, "jobId": job.id, "status": job.status, "balance": sub.balance}), 202


# ---------------------------------------------------------
# GET /decode/status?id=<jobId>[&cancel=1]
#   -> {"status", "result"?, "error"?, "code"?}
# ---------------------------------------------------------
@bp.get("/status")
@require_principal()
def decode_status():
    job_id = (request.args.get("id") or "").strip()
    if not job_id:
        raise InvalidInput("id parameter required")

    coordinator = get_services().coordinator
    uid = g.principal.principal_id
    if request.args.get("cancel") == "1":
        job = coordinator.cancel(uid, job_id)
    else:
        job = coordinator.get_job(uid, job_id)
    return jsonify(job.to_status())


# ---------------------------------------------------------
# GET /decode/jobs?limit=20
# ---------------------------------------------------------
@bp.get("/jobs")
@require_principal()
def list_jobs():
    try:
        limit = int(request.args.get("limit", 20))
    except ValueError:
        raise InvalidInput("limit must be an integer")
    jobs = get_services().coordinator.list_jobs(g.principal.principal_id, limit)
    return jsonify({"ok": True, "items": [j.to_dict() for j in jobs]})
