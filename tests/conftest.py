# tests/conftest.py
import asyncio
import json
import time

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from aikizi import create_app
from aikizi.database import db
from aikizi.models import User
from aikizi.services import get_services
from aikizi.services.providers import ProviderGateway

ISSUER = "https://test-project.supabase.co/auth/v1"
KID = "test-key-1"

HAPPY_REPLY = (
    '```json\n{"styleCodes":["--sref 123"],"tags":["minimal"],"subjects":["shape"],'
    '"prompts":{"story":"a","mix":"b","expand":"c","sound":"d"}}\n```'
)

# 1x1 PNG
PNG_B64 = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


class FakeGateway(ProviderGateway):
    """Gateway real (timeout / cancelación) con la llamada HTTP sustituida."""

    def __init__(self, reply=HAPPY_REPLY, error=None, delay=0.0):
        super().__init__(openai_api_key="sk-test", gemini_api_key="gemini-test")
        self.reply = reply
        self.error = error
        self.delay = delay
        self.calls = 0
        self.on_call = None

    async def _dispatch(self, image, model, timeout):
        self.calls += 1
        if self.on_call is not None:
            self.on_call()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def jwks(rsa_key):
    jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(rsa_key.public_key()))
    jwk.update({"kid": KID, "alg": "RS256", "use": "sig"})
    return {"keys": [jwk]}


@pytest.fixture
def make_token(rsa_key):
    def _make(sub="auth-user-1", key=None, kid=KID, **claims):
        now = int(time.time())
        payload = {
            "sub": sub,
            "iss": ISSUER,
            "iat": now,
            "exp": now + 3600,
            "email": f"{sub}@example.com",
            "aud": "authenticated",
        }
        payload.update(claims)
        payload = {k: v for k, v in payload.items() if v is not None}
        return jwt.encode(payload, key or rsa_key, algorithm="RS256", headers={"kid": kid})

    return _make


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def app(tmp_path, jwks, gateway):
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'test.db'}",
            "SUPABASE_JWKS_URL": "https://test-project.supabase.co/auth/v1/.well-known/jwks.json",
            "SUPABASE_JWT_ISSUER": ISSUER,
            "SUPABASE_JWT_AUDIENCE": None,
            "JWKS_FETCH": lambda: jwks,
            "ADMIN_AUTH_IDS": ("auth-admin",),
            "OPENAI_API_KEY": "sk-test",
            "GEMINI_API_KEY": "gemini-test",
            "UPLOAD_FOLDER": str(tmp_path / "uploads"),
            "WELCOME_TOKENS": 5,
            "PRO_MONTHLY_TOKENS": 100,
            "DECODE_MODE": "sync",
            "DECODE_TIMEOUT_SECONDS": 0.3,
            "CANCEL_POLL_SECONDS": 0.02,
            "CRON_SECRET": "cron-secret",
            "CELERY_BROKER_URL": "memory://",
        }
    )
    services = app.extensions["aikizi"]
    services.gateway = gateway
    services.coordinator.gateway = gateway

    with app.app_context():
        yield app
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return get_services()


@pytest.fixture
def account(services, make_token):
    """Cuenta aprovisionada vía ensure_account; devuelve (principal, token)."""

    def _make(sub="auth-user-1", welcome=5):
        token = make_token(sub)
        ctx = services.resolver.authenticate(token)
        principal, _ = services.resolver.ensure_account(ctx, services.ledger, welcome_tokens=welcome)
        return principal, token

    return _make


@pytest.fixture
def funded_user(services):
    """User + entitlement con saldo `balance`, sin pasar por auth."""

    def _make(balance=5, auth_id="ledger-user"):
        user = User(auth_id=auth_id)
        db.session.add(user)
        db.session.commit()
        services.ledger.open_entitlement(user.id)
        if balance:
            services.ledger.grant(user.id, balance, "admin_seed", idem_key=f"seed:{user.id}")
        return user.id

    return _make


def auth_headers(token, idem=None):
    headers = {"Authorization": f"Bearer {token}"}
    if idem:
        headers["Idem-Key"] = idem
    return headers
