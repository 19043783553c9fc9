# aikizi/services/__init__.py
"""
Registro de servicios por app.

`init_services(app)` construye ledger, gateway, resolver y coordinador a
partir de app.config y los deja en app.extensions["aikizi"]. Los tests
pueden sustituir cualquiera (p.ej. el gateway) tras crear la app.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from flask import Flask, current_app

from aikizi.services.assets import AssetStore
from aikizi.services.auth import PrincipalResolver
from aikizi.services.decode_jobs import DecodeJobCoordinator
from aikizi.services.jwks import JwksCache, TokenVerifier
from aikizi.services.ledger import TokenLedger
from aikizi.services.providers import ProviderGateway


@dataclass
class Services:
    ledger: TokenLedger
    gateway: ProviderGateway
    resolver: PrincipalResolver
    coordinator: DecodeJobCoordinator


def init_services(app: Flask) -> Services:
    cfg = app.config

    jwks = None
    if cfg.get("SUPABASE_JWKS_URL"):
        jwks = JwksCache(
            cfg["SUPABASE_JWKS_URL"],
            ttl_seconds=int(cfg.get("JWKS_CACHE_SECONDS", 3600)),
            fetch=cfg.get("JWKS_FETCH"),
        )
    verifier = TokenVerifier(
        jwks,
        issuer=cfg.get("SUPABASE_JWT_ISSUER"),
        audience=cfg.get("SUPABASE_JWT_AUDIENCE"),
    )

    upload_folder = cfg.get("UPLOAD_FOLDER") or os.path.join(app.instance_path, "uploads")

    ledger = TokenLedger()
    gateway = ProviderGateway.from_config(cfg)
    services = Services(
        ledger=ledger,
        gateway=gateway,
        resolver=PrincipalResolver(verifier, admin_ids=cfg.get("ADMIN_AUTH_IDS") or ()),
        coordinator=DecodeJobCoordinator(
            ledger,
            gateway,
            AssetStore(upload_folder),
            cost=int(cfg.get("DECODE_COST", 1)),
            timeout=float(cfg.get("DECODE_TIMEOUT_SECONDS", 60)),
            cancel_poll=float(cfg.get("CANCEL_POLL_SECONDS", 0.5)),
            stale_seconds=int(cfg.get("STALE_JOB_SECONDS", 300)),
        ),
    )
    app.extensions["aikizi"] = services
    return services


def get_services() -> Services:
    return current_app.extensions["aikizi"]
