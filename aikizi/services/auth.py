# aikizi/services/auth.py
"""
Resolución del principal a partir del access token.

Fuentes del token (en este orden):
  1) Authorization: Bearer <jwt>
  2) header x-supabase-auth
  3) cookie sb-access-token
"""

from __future__ import annotations

import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from functools import wraps
from typing import Iterable, Optional, Tuple

from flask import g, request
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from aikizi.database import db
from aikizi.errors import AccountNotFound, Forbidden, Unauthenticated
from aikizi.models import Profile, Role, TransactionKind, User
from aikizi.services.jwks import TokenVerifier
from aikizi.services.ledger import WELCOME_KEY, TokenLedger

log = logging.getLogger(__name__)

HANDLE_ATTEMPTS = 5
_BEARER_RE = re.compile(r"^Bearer\s+", re.IGNORECASE)
_HANDLE_RE = re.compile(r"[^a-z0-9_]")


@dataclass(frozen=True)
class AuthContext:
    """Token verificado, aún sin cuenta interna."""

    auth_id: str
    token: str
    claims: dict = field(default_factory=dict)

    @property
    def email(self) -> str:
        return str(self.claims.get("email") or "")

    @property
    def metadata(self) -> dict:
        meta = self.claims.get("user_metadata")
        return meta if isinstance(meta, dict) else {}


@dataclass(frozen=True)
class Principal:
    principal_id: str
    auth_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.admin


def extract_token(req=None) -> Optional[str]:
    req = req or request
    header = req.headers.get("Authorization")
    if header:
        token = _BEARER_RE.sub("", header).strip()
        return token or None
    alt = (req.headers.get("x-supabase-auth") or "").strip()
    if alt:
        return alt
    cookie = (req.cookies.get("sb-access-token") or "").strip()
    return cookie or None


def _clean_handle(base: str) -> str:
    return _HANDLE_RE.sub("", (base or "").lower())[:20]


def unique_handle(base: str, attempts: int = HANDLE_ATTEMPTS) -> str:
    """Handle libre: base, base_xxxx (hasta `attempts`), o base_<tiempo base36>."""
    clean = _clean_handle(base) or "user"
    for attempt in range(attempts):
        handle = clean if attempt == 0 else f"{clean}_{secrets.token_hex(2)}"
        taken = db.session.execute(select(Profile.user_id).where(Profile.handle == handle)).scalar()
        if taken is None:
            return handle
    return f"{clean}_{_base36(int(time.time() * 1000))}"


def _base36(n: int) -> str:
    chars = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = chars[r] + out
    return out or "0"


class PrincipalResolver:
    def __init__(self, verifier: TokenVerifier, admin_ids: Iterable[str] = ()) -> None:
        self.verifier = verifier
        self.admin_ids = frozenset(admin_ids)

    # -----------------------------------------------------------
    # TOKEN -> CONTEXTO / PRINCIPAL
    # -----------------------------------------------------------
    def authenticate(self, token: Optional[str]) -> AuthContext:
        claims = self.verifier.verify(token)
        sub = claims.get("sub")
        if not sub:
            raise Unauthenticated("Token has no subject.")
        return AuthContext(auth_id=str(sub), token=token, claims=claims)

    def resolve(self, token: Optional[str]) -> Principal:
        ctx = self.authenticate(token)
        user = self._find_user(ctx.auth_id)
        if user is None:
            raise AccountNotFound()
        return self._principal(user)

    def _principal(self, user: User) -> Principal:
        if user.auth_id in self.admin_ids:
            role = Role.admin
        else:
            role = Role(user.role)
        return Principal(principal_id=user.id, auth_id=user.auth_id, role=role)

    @staticmethod
    def _find_user(auth_id: str) -> Optional[User]:
        return db.session.execute(select(User).where(User.auth_id == auth_id)).scalar()

    # -----------------------------------------------------------
    # ENSURE ACCOUNT (idempotente)
    # -----------------------------------------------------------
    def ensure_account(
        self,
        ctx: AuthContext,
        ledger: TokenLedger,
        welcome_tokens: int,
    ) -> Tuple[Principal, bool]:
        """
        Crea User + Profile + Entitlement si faltan y concede la bienvenida
        una sola vez. La garantía la da la restricción única del ledger,
        no esta comprobación previa.
        """
        user = self._find_user(ctx.auth_id)
        created = False
        if user is None:
            db.session.add(User(auth_id=ctx.auth_id, role=Role.viewer.value))
            try:
                db.session.commit()
                created = True
            except IntegrityError:
                db.session.rollback()
            user = self._find_user(ctx.auth_id)
            if created:
                log.info("[account] usuario creado id=%s auth_id=%s", user.id, ctx.auth_id)

        self._ensure_profile(user, ctx)
        ledger.open_entitlement(user.id, "free")

        if welcome_tokens > 0 and not ledger.has_transaction(
            user.id, TransactionKind.welcome_grant, WELCOME_KEY
        ):
            ledger.grant(user.id, welcome_tokens, "welcome", ref={"plan": "free"})

        return self._principal(user), created

    def _ensure_profile(self, user: User, ctx: AuthContext) -> None:
        if db.session.get(Profile, user.id) is not None:
            return

        local = ctx.email.split("@")[0] if ctx.email else ""
        meta = ctx.metadata
        display = meta.get("full_name") or meta.get("name") or local or "User"

        # dos intentos: otro usuario puede llevarse el mismo handle entre la consulta y el INSERT
        for attempt in (1, 2):
            handle = unique_handle(local or f"user{user.id[:8]}")
            db.session.add(Profile(user_id=user.id, handle=handle, display_name=display, is_public=False))
            try:
                db.session.commit()
                log.info("[account] perfil creado user=%s handle=%s", user.id, handle)
                return
            except IntegrityError:
                db.session.rollback()
                if db.session.get(Profile, user.id) is not None:
                    return
                if attempt == 2:
                    raise
                log.info("[account] handle %s ocupado en carrera, reintento user=%s", handle, user.id)


# ---------------------------------------------------------
# Decoradores para rutas
# ---------------------------------------------------------
def require_auth(fn):
    """Solo verifica el token: deja g.auth (AuthContext)."""

    @wraps(fn)
    def wrapper(*args, **kwargs):
        from aikizi.services import get_services

        g.auth = get_services().resolver.authenticate(extract_token())
        return fn(*args, **kwargs)

    return wrapper


def require_principal(*roles: Role):
    """Token + cuenta existente (+ rol, si se indica): deja g.principal."""

    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            from aikizi.services import get_services

            principal = get_services().resolver.resolve(extract_token())
            if roles and principal.role not in roles:
                raise Forbidden()
            g.principal = principal
            return fn(*args, **kwargs)

        return wrapper

    return decorator
