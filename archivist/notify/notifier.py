from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol

import httpx

from archivist.utils.retry import run_with_retry

logger = logging.getLogger(__name__)

PRIORITY_NORMAL = 0
PRIORITY_HIGH = 1


class SecretStore(Protocol):
    """Platform secret store used to keep the notification token protected."""

    def protect(self, plaintext: str) -> str: ...

    def unprotect(self, token: str) -> str: ...


class Notifier:
    """Posts ``(title, message, priority)`` to an HTTP endpoint.

    :meth:`notify` returns immediately; delivery happens on a daemon thread
    so a slow or dead endpoint can neither block the run nor keep the
    process alive. Delivery failures are logged and never raised.
    """

    def __init__(
        self,
        url: str,
        *,
        protected_token: str | None = None,
        secret_store: SecretStore | None = None,
        timeout_seconds: float = 10.0,
        max_retries: int = 1,
        client_factory: Callable[..., httpx.Client] = httpx.Client,
    ) -> None:
        self.url = url
        self.protected_token = protected_token
        self.secret_store = secret_store
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.client_factory = client_factory

    def notify(
        self, title: str, message: str, priority: int = PRIORITY_NORMAL
    ) -> threading.Thread:
        thread = threading.Thread(
            target=self.send,
            args=(title, message, priority),
            name="archivist-notify",
            daemon=True,
        )
        thread.start()
        return thread

    def send(self, title: str, message: str, priority: int = PRIORITY_NORMAL) -> bool:
        payload = {"title": title, "message": message, "priority": priority}
        try:
            headers = self._headers()
            run_with_retry(
                operation=lambda: self._post(payload, headers),
                should_retry=_is_retryable_http_error,
                max_retries=self.max_retries,
            )
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Notification delivery failed: %s: %s", error.__class__.__name__, error
            )
            return False
        return True

    def _post(self, payload: dict[str, object], headers: dict[str, str]) -> None:
        with self.client_factory(timeout=self.timeout_seconds) as client:
            response = client.post(self.url, json=payload, headers=headers)
            response.raise_for_status()

    def _headers(self) -> dict[str, str]:
        if not self.protected_token:
            return {}
        token = self.protected_token
        if self.secret_store is not None:
            token = self.secret_store.unprotect(token)
        return {"Authorization": f"Bearer {token}"}


def _is_retryable_http_error(error: Exception) -> bool:
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        return status_code == 429 or 500 <= status_code <= 599
    return False


def build_notifier(
    url: str | None,
    token: str | None,
    *,
    secret_store: SecretStore | None = None,
    timeout_seconds: float = 10.0,
) -> Notifier | None:
    """Return a notifier for ``url``, or ``None`` when no URL is configured.

    ``token`` goes through ``secret_store.unprotect`` when a store is given
    and is used as the bearer token unchanged otherwise.
    """
    if not url:
        return None
    return Notifier(
        url,
        protected_token=token,
        secret_store=secret_store,
        timeout_seconds=timeout_seconds,
    )
