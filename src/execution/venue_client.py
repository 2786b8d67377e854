"""
Minimal async HTTP client for the venue REST API (HTTP/2 via httpx).

Request signing is not done here: private requests are passed to a signer
callable that returns the authentication headers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

import httpx

from src.core.errors import RateLimited, TransientNetworkError, VenueError
from src.core.json_utils import loads


@dataclass(frozen=True)
class VenueRequest:
    method: str
    path: str
    params: Dict[str, Any] = field(default_factory=dict)
    body: Optional[Dict[str, Any]] = None
    # venue "instruction" name used by the signer (e.g. orderExecute, balanceQuery)
    instruction: Optional[str] = None
    private: bool = False


@dataclass(frozen=True)
class VenueResponse:
    status: int
    data: Any


RequestSigner = Callable[[VenueRequest], Mapping[str, str]]


def _looks_rate_limited(text: str) -> bool:
    low = text.lower()
    return "rate limit" in low or "exceeded" in low or "too many requests" in low


class VenueClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        signer: Optional[RequestSigner] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.signer = signer
        # A shared client passed in is not closed by close().
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, http2=True, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def execute(self, request: VenueRequest) -> VenueResponse:
        """Perform one request.

        Raises RateLimited (429 or a rate-limit message), TransientNetworkError
        (transport failure or 5xx) or VenueError (other 4xx).
        """
        headers: Dict[str, str] = {"Content-Type": "application/json"}
        if request.private:
            if self.signer is None:
                raise VenueError(f"{request.method} {request.path} needs a signer", status=None)
            headers.update(self.signer(request))

        try:
            resp = await self.client.request(
                request.method,
                request.path,
                params=request.params or None,
                json=request.body,
                headers=headers,
            )
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(f"{request.method} {request.path} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"{request.method} {request.path} failed: {exc}") from exc

        text = resp.text
        if resp.status_code == 429:
            raise RateLimited(text or "rate limit exceeded", status=429)
        if resp.status_code >= 500:
            raise TransientNetworkError(f"{request.path} HTTP {resp.status_code}: {text[:200]}")
        if resp.status_code >= 400:
            if _looks_rate_limited(text):
                raise RateLimited(text, status=resp.status_code)
            raise VenueError(f"{request.path} HTTP {resp.status_code}: {text[:200]}",
                             status=resp.status_code, body=text)

        data: Any = None
        if resp.content:
            try:
                data = loads(resp.content)
            except ValueError:
                data = text
        return VenueResponse(status=resp.status_code, data=data)
