import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class HTTPClient:
    """Pooled httpx client shared by calls to one external service."""

    def __init__(self, timeout: float = 10.0, auth: Optional[httpx.Auth] = None,
                 transport: Optional[httpx.BaseTransport] = None, base_url: str = ""):
        limits = httpx.Limits(
            max_keepalive_connections=20,
            max_connections=100,
            keepalive_expiry=30.0
        )
        self._client = httpx.Client(
            base_url=base_url,
            limits=limits,
            timeout=httpx.Timeout(timeout=timeout, connect=5.0),
            auth=auth,
            transport=transport,
            follow_redirects=True,
        )

    def post(self, url: str, **kwargs) -> httpx.Response:
        logger.debug(f"POST {url}")
        return self._client.post(url, **kwargs)

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
