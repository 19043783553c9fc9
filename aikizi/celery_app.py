# aikizi/celery_app.py
# -*- coding: utf-8 -*-
"""
Celery para procesar jobs de decode fuera de la petición HTTP.

Con broker `memory://` (por defecto) corre en modo EAGER: la tarea se
ejecuta en el mismo proceso Flask (desarrollo / tests).
"""

import logging

from celery import Celery
from flask import Flask

logger = logging.getLogger(__name__)

celery_app = Celery("aikizi")
_flask_app = None


def init_celery(app: Flask) -> Celery:
    global _flask_app
    _flask_app = app

    broker = app.config.get("CELERY_BROKER_URL") or "memory://"
    backend = app.config.get("CELERY_RESULT_BACKEND")
    celery_app.conf.update(broker_url=broker, result_backend=backend)

    if broker.startswith("memory"):
        celery_app.conf.update(task_always_eager=True, task_ignore_result=True)
        logger.info("[celery] EAGER mode ON (memory broker): tasks run in Flask process")
    else:
        celery_app.conf.update(task_always_eager=False)
        logger.info("[celery] BROKER=%s BACKEND=%s", broker, backend)
    return celery_app


def _app() -> Flask:
    if _flask_app is None:
        # worker arrancado con `celery -A aikizi.celery_app worker`
        from aikizi import create_app

        create_app()
    return _flask_app


# -----------------------------------------------------------------------------
# Tarea principal
# -----------------------------------------------------------------------------
@celery_app.task(name="process_decode_job", bind=True, max_retries=0)
def process_decode_job(self, job_id: str):
    """
    Lleva el job a un estado terminal. Sin reintentos automáticos: un
    reintento sería un decode nuevo (nuevo spend) que decide el cliente.
    """
    from aikizi.services import get_services

    with _app().app_context():
        job = get_services().coordinator.run(job_id)
        logger.info("[celery] job=%s terminado status=%s", job_id, job.status)
        return job.status


def enqueue_decode(job_id: str) -> None:
    process_decode_job.delay(job_id)
