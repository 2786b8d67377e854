"""
Stream transport: the push-feed capability the ingestor consumes.

StreamTransport is abstract so the ingestor can be driven by a scripted fake in
tests; AiohttpStreamTransport is the websocket implementation.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Union

import aiohttp

from src.core.json_utils import dumps
from src.core.utils import normalize_symbol

log = logging.getLogger("dcabot")

# Returns the "signature" array for a private subscription:
# [api_key, signature, timestamp, window]
StreamSigner = Callable[[], List[str]]


class StreamTransport(ABC):
    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def subscribe(self, instrument: str) -> List[str]:
        """Subscribe to the instrument's streams; returns the stream names as a handle."""

    @abstractmethod
    async def unsubscribe(self, handle: List[str]) -> None: ...

    @abstractmethod
    async def receive(self) -> Optional[Union[str, bytes]]:
        """Next frame, or None once the connection is closed."""

    @abstractmethod
    async def ping(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @property
    @abstractmethod
    def is_open(self) -> bool: ...


class AiohttpStreamTransport(StreamTransport):
    def __init__(
        self,
        url: str,
        session: Optional[aiohttp.ClientSession] = None,
        signer: Optional[StreamSigner] = None,
        connect_timeout: float = 10.0,
    ) -> None:
        self.url = url
        self._session = session
        self._owns_session = session is None
        self._signer = signer
        self._connect_timeout = connect_timeout
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        self._ws = await asyncio.wait_for(
            self._session.ws_connect(self.url, autoping=True),
            timeout=self._connect_timeout,
        )
        log.info(dumps({"event": "stream_transport_connected", "url": self.url}))

    async def _send(self, payload: Dict[str, Any]) -> None:
        if not self.is_open:
            raise ConnectionError("stream transport is not connected")
        await self._ws.send_str(dumps(payload))

    async def subscribe(self, instrument: str) -> List[str]:
        symbol = normalize_symbol(instrument)
        public = [f"ticker.{symbol}"]
        await self._send({"method": "SUBSCRIBE", "params": public})
        handle = list(public)
        if self._signer is not None:
            private = ["account.orderUpdate", "account.balanceUpdate"]
            await self._send({"method": "SUBSCRIBE", "params": private, "signature": self._signer()})
            handle.extend(private)
        log.info(dumps({"event": "stream_subscribed", "instrument": symbol, "streams": handle}))
        return handle

    async def unsubscribe(self, handle: List[str]) -> None:
        if self.is_open and handle:
            await self._send({"method": "UNSUBSCRIBE", "params": list(handle)})

    async def receive(self) -> Optional[Union[str, bytes]]:
        if self._ws is None:
            return None
        msg = await self._ws.receive()
        if msg.type == aiohttp.WSMsgType.TEXT:
            return msg.data
        if msg.type == aiohttp.WSMsgType.BINARY:
            return msg.data
        if msg.type == aiohttp.WSMsgType.ERROR:
            log.warning(dumps({"event": "stream_transport_error", "err": str(self._ws.exception())}))
        # CLOSE / CLOSING / CLOSED
        return None

    async def ping(self) -> None:
        await self._send({"op": "ping"})

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
            self._session = None
