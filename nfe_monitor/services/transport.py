"""Outbound HTTP to SEFAZ with bounded timeout, TLS settings and retry."""

from __future__ import annotations

import logging
import ssl
import time
from typing import Any, Callable, Dict, Optional

import httpx

from ..config import Settings

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "NFe-Monitor/1.0.0",
    "Accept": "application/json, application/xml",
}


def build_verify(settings: Settings):
    if not settings.verify_tls:
        return False
    if not settings.ca_bundle and not settings.client_cert:
        return True

    context = ssl.create_default_context(cafile=settings.ca_bundle)
    if settings.client_cert:
        context.load_cert_chain(settings.client_cert, settings.client_key)
    return context


class SefazTransport:
    """Sends requests, retrying only transport-level failures.

    Delay before retry n (1-based) is ``retry_delay * 2 ** (n - 1)``. HTTP
    responses are returned as-is whatever their status code; the caller
    decides what a 4xx/5xx means.
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.max_retries = max(settings.max_retries, 0)
        self.retry_delay = settings.retry_delay_seconds
        self._sleep = sleep
        self._owns_client = client is None
        self.client = client or httpx.Client(
            timeout=settings.http_timeout_seconds,
            verify=build_verify(settings),
            headers=DEFAULT_HEADERS,
        )

    def backoff(self, retry: int) -> float:
        return self.retry_delay * (2 ** (retry - 1))

    def send(
        self,
        method: str,
        url: str,
        payload: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        method = method.upper()
        retry = 0
        while True:
            try:
                return self.client.request(
                    method,
                    url,
                    json=payload,
                    headers=headers,
                    timeout=self.settings.http_timeout_seconds,
                )
            except httpx.TransportError as e:
                if retry >= self.max_retries:
                    logger.error(f"{method} {url} failed after {retry + 1} attempts: {e!r}")
                    raise
                retry += 1
                delay = self.backoff(retry)
                logger.warning(f"{method} {url} failed ({e!r}), retry {retry}/{self.max_retries} in {delay}s")
                self._sleep(delay)

    def close(self):
        if self._owns_client:
            self.client.close()
