# aikizi/services/jwks.py
"""
Caché de claves públicas (JWKS) y verificación de access tokens.

- Las claves se refrescan como mucho cada `ttl_seconds` (1h por defecto).
- Con caché vencida pero presente NO se bloquea: se sirven las claves
  viejas y se refresca en segundo plano.
- Solo la primera carga (caché vacía) es bloqueante.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional

import httpx
import jwt

from aikizi.errors import (
    ConfigurationError,
    ExpiredCredential,
    InvalidSignature,
    MalformedCredential,
    NoCredential,
    NotYetValidCredential,
    Unauthenticated,
    UnknownSigningKey,
)

log = logging.getLogger(__name__)

ALLOWED_ALGORITHMS = ("RS256", "ES256")


class JwksCache:
    def __init__(
        self,
        url: str,
        ttl_seconds: int = 3600,
        fetch: Optional[Callable[[], dict]] = None,
        clock: Callable[[], float] = time.monotonic,
        spawn: Optional[Callable[[Callable[[], None]], None]] = None,
    ) -> None:
        self.url = url
        self.ttl_seconds = ttl_seconds
        self._fetch = fetch or self._http_fetch
        self._clock = clock
        self._spawn = spawn or self._spawn_thread
        self._keys: Optional[Dict[str, dict]] = None
        self._fetched_at = 0.0
        self._refreshing = False
        self._lock = threading.Lock()

    # -----------------------------------------------------------
    # API
    # -----------------------------------------------------------
    def get_key(self, kid: str) -> Optional[dict]:
        return self.keys().get(kid)

    def keys(self) -> Dict[str, dict]:
        start_background = False
        with self._lock:
            keys = self._keys
            if keys is not None:
                if self._clock() - self._fetched_at < self.ttl_seconds:
                    return keys
                if not self._refreshing:
                    self._refreshing = True
                    start_background = True
        if keys is not None:
            if start_background:
                self._spawn(self._background_refresh)
            return keys
        return self.refresh()

    def refresh(self) -> Dict[str, dict]:
        data = self._fetch()
        keys = {k["kid"]: k for k in (data or {}).get("keys", []) if isinstance(k, dict) and k.get("kid")}
        with self._lock:
            self._keys = keys
            self._fetched_at = self._clock()
            self._refreshing = False
        log.info("[jwks] %s claves cargadas desde %s", len(keys), self.url)
        return keys

    # -----------------------------------------------------------
    # INTERNOS
    # -----------------------------------------------------------
    def _background_refresh(self) -> None:
        try:
            self.refresh()
        except ConfigurationError as e:
            # seguimos sirviendo las claves viejas; se reintenta en la próxima lectura
            log.warning("[jwks] refresh en segundo plano falló: %s", e)
        finally:
            with self._lock:
                self._refreshing = False

    @staticmethod
    def _spawn_thread(fn: Callable[[], None]) -> None:
        threading.Thread(target=fn, name="jwks-refresh", daemon=True).start()

    def _http_fetch(self) -> dict:
        try:
            with httpx.Client(timeout=10.0, headers={"User-Agent": "aikizi/1.0"}) as client:
                resp = client.get(self.url)
        except httpx.HTTPError as e:
            raise ConfigurationError(f"JWKS endpoint unreachable: {e}")

        if resp.status_code >= 400:
            raise ConfigurationError(f"JWKS fetch failed: {resp.status_code}")
        try:
            return resp.json()
        except ValueError:
            raise ConfigurationError("JWKS endpoint returned invalid JSON")


class TokenVerifier:
    """Verifica estructura, firma, issuer, exp y nbf de un JWT."""

    def __init__(
        self,
        jwks: Optional[JwksCache],
        issuer: Optional[str],
        audience: Optional[str] = None,
        leeway: int = 0,
    ) -> None:
        self.jwks = jwks
        self.issuer = issuer
        self.audience = audience
        self.leeway = leeway

    def verify(self, token: Optional[str]) -> dict:
        if not token:
            raise NoCredential()
        if self.jwks is None or not self.issuer:
            raise ConfigurationError("JWKS URL / JWT issuer not configured")

        try:
            header = jwt.get_unverified_header(token)
        except jwt.DecodeError:
            raise MalformedCredential()

        kid = header.get("kid")
        alg = header.get("alg")
        if not kid or alg not in ALLOWED_ALGORITHMS:
            raise MalformedCredential()

        jwk = self.jwks.get_key(kid)
        if jwk is None:
            raise UnknownSigningKey()
        try:
            key = jwt.PyJWK(jwk, algorithm=alg).key
        except (jwt.PyJWKError, jwt.InvalidKeyError):
            raise UnknownSigningKey("Signing key could not be loaded.")

        try:
            claims = jwt.decode(
                token,
                key=key,
                algorithms=[alg],
                issuer=self.issuer,
                audience=self.audience,
                leeway=self.leeway,
                options={"require": ["exp", "sub"], "verify_aud": self.audience is not None},
            )
        except jwt.ExpiredSignatureError:
            raise ExpiredCredential()
        except jwt.ImmatureSignatureError:
            raise NotYetValidCredential()
        except jwt.InvalidSignatureError:
            raise InvalidSignature()
        except jwt.InvalidIssuerError:
            raise Unauthenticated("Invalid token issuer.", code="INVALID_ISSUER")
        except jwt.InvalidTokenError:
            raise MalformedCredential()

        log.debug("[auth] jwks=ok sub=%s", claims.get("sub"))
        return claims
