"""API client authenticated with a signed identity file."""
from __future__ import annotations

import logging
import ssl
from pathlib import Path
from typing import Any

import httpx

from .errors import IntegrationError
from .network import Addr

LOGGER = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 10.0


class ClientError(IntegrationError):
    """Raised when the API client cannot be built or a request fails."""


def identity_ssl_context(identity_path: str | Path) -> ssl.SSLContext:
    """Return a client TLS context loading key and certificate from *identity_path*.

    Server verification is disabled: test clusters use a freshly generated CA
    that the client has no prior trust in.
    """
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    try:
        context.load_cert_chain(str(identity_path))
    except (OSError, ssl.SSLError) as exc:
        raise ClientError(f"Failed to load identity file {identity_path}: {exc}") from exc
    return context


class AuthClient:
    """HTTPS client talking to the auth server as *user*."""

    def __init__(
        self,
        addr: Addr,
        identity_path: str | Path,
        user: str,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Build the underlying :class:`httpx.Client`."""
        if addr.is_empty():
            raise ClientError("Auth server address is not known yet.")
        self.addr = addr
        self.identity_path = Path(identity_path)
        self.user = user
        self.base_url = f"https://{addr}"
        self._client = httpx.Client(
            base_url=self.base_url,
            verify=identity_ssl_context(self.identity_path),
            timeout=timeout,
            transport=transport,
        )
        self._closed = False

    def __enter__(self) -> AuthClient:
        """Return self for ``with`` usage."""
        return self

    def __exit__(self, *exc_info: object) -> None:
        """Close the client."""
        self.close()

    @property
    def closed(self) -> bool:
        """Return True once :meth:`close` ran."""
        return self._closed

    def request(self, method: str, endpoint: str, **kwargs: Any) -> httpx.Response:
        """Send a request; non-2xx responses raise :class:`ClientError`."""
        if self._closed:
            raise ClientError("Client is closed.")
        try:
            response = self._client.request(method, f"/{endpoint.lstrip('/')}", **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ClientError(f"{method} {endpoint} failed: {exc}") from exc
        return response

    def get_json(self, endpoint: str, **kwargs: Any) -> Any:
        """GET *endpoint* and decode the JSON body."""
        return self.request("GET", endpoint, **kwargs).json()

    def close(self) -> None:
        """Release the connection pool. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._client.close()
        LOGGER.debug("Closed API client for %s", self.user)


__all__ = ["AuthClient", "ClientError", "identity_ssl_context"]
