import asyncio
import json
import logging
from typing import Any, Optional

import websockets

from .connection import ConnectionManager, wait_or_stop

log = logging.getLogger(__name__)


class HeadWatcher:
    """Wakes the poll loops on every new block seen over a websocket.

    Purely an accelerator: if the socket is down the engines still poll on
    their interval.
    """

    def __init__(self, url: str, connection: ConnectionManager, reconnect_delay: float = 5, max_backoff: float = 60):
        self.url = url
        self.connection = connection
        self.reconnect_delay = reconnect_delay
        self.max_backoff = max_backoff
        self._req_id = 0
        self.subscription_id: Optional[str] = None

    async def run(self, stop: asyncio.Event) -> None:
        backoff = max(self.reconnect_delay, 1)
        while not stop.is_set():
            try:
                async with websockets.connect(self.url, ping_interval=20, ping_timeout=20) as ws:
                    self.subscription_id = await self._subscribe(ws)
                    log.info("Subscribed to new heads: %s", self.subscription_id)
                    backoff = max(self.reconnect_delay, 1)
                    await self._consume(ws, stop)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.warning("Websocket error: %s; reconnecting in %.0fs", exc, backoff)
                if await wait_or_stop(stop, backoff):
                    return
                backoff = min(backoff * 2, self.max_backoff)

    async def _consume(self, ws: Any, stop: asyncio.Event) -> None:
        async for message in ws:
            if stop.is_set():
                return
            await self.handle_message(json.loads(message))

    async def _subscribe(self, ws: Any) -> str:
        self._req_id += 1
        req_id = self._req_id
        await ws.send(json.dumps({"jsonrpc": "2.0", "id": req_id, "method": "eth_subscribe", "params": ["newHeads"]}))

        while True:
            data = json.loads(await ws.recv())
            if data.get("id") == req_id:
                if "result" in data:
                    return data["result"]
                raise RuntimeError(f"Subscribe failed: {data}")
            await self.handle_message(data)

    async def handle_message(self, payload: Any) -> Optional[int]:
        if not isinstance(payload, dict):
            return None
        if payload.get("method") != "eth_subscription":
            if payload.get("error"):
                log.warning("WS error: %s", payload)
            return None
        head = (payload.get("params") or {}).get("result") or {}
        number = head.get("number")
        if number is None:
            return None
        block_number = int(number, 16) if isinstance(number, str) else int(number)
        log.debug("New head %d", block_number)
        await self.connection.notify_head(block_number)
        return block_number
