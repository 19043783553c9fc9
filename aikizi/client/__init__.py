# aikizi/client/__init__.py
from aikizi.client.api import (  # noqa: F401
    ApiClient,
    ApiError,
    AuthSession,
    ReadinessGate,
    ReauthRequired,
)
from aikizi.client.poller import DecodeOutcome, DecodePoller, UploadRejected  # noqa: F401
from aikizi.client.retry import RetryPolicy  # noqa: F401
