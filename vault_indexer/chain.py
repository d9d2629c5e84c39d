"""Chain client: HTTP JSON-RPC for history, websocket subscriptions for the tail."""

import asyncio
import json
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets
from web3 import Web3

from .utils import log as _log


OnLogs = Callable[[List[Dict[str, Any]]], Awaitable[None]]


class ChainClient:
    def __init__(
        self,
        rpc_http: str,
        rpc_ws: Optional[str] = None,
        rpc_timeout: float = 30.0,
        max_block_cache: int = 4096,
    ):
        self.rpc_http = rpc_http
        self.rpc_ws = rpc_ws
        self.rpc_timeout = rpc_timeout
        self.w3 = Web3(Web3.HTTPProvider(rpc_http, request_kwargs={"timeout": rpc_timeout}))
        self.max_block_cache = max_block_cache
        self._block_ts_cache: "OrderedDict[int, int]" = OrderedDict()
        self._ws_id = 0

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "ChainClient":
        return cls(
            cfg["rpc_http"],
            rpc_ws=cfg.get("rpc_ws"),
            rpc_timeout=float(cfg.get("rpc_timeout", 30.0)),
        )

    @property
    def codec(self) -> Any:
        return self.w3.codec

    async def get_block_number(self) -> int:
        return await asyncio.to_thread(lambda: int(self.w3.eth.block_number))

    async def get_logs(
        self, addresses: List[str], topic: str, from_block: int, to_block: int
    ) -> List[Dict[str, Any]]:
        params = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": addresses,
            "topics": [topic],
        }
        logs = await asyncio.to_thread(self.w3.eth.get_logs, params)
        return [dict(entry) for entry in logs]

    async def get_block_timestamp(self, block_number: int) -> int:
        if block_number in self._block_ts_cache:
            return self._block_ts_cache[block_number]
        block = await asyncio.to_thread(self.w3.eth.get_block, block_number)
        ts = int(block["timestamp"])
        self._block_ts_cache[block_number] = ts
        while len(self._block_ts_cache) > self.max_block_cache:
            self._block_ts_cache.popitem(last=False)
        return ts

    async def watch_events(self, addresses: List[str], topics: List[str], on_logs: OnLogs) -> None:
        """Hold one log subscription per event topic until the socket closes."""
        if not self.rpc_ws:
            raise RuntimeError("rpc_ws is required for websocket subscription")

        async with websockets.connect(self.rpc_ws, ping_interval=20, ping_timeout=20) as ws:
            _log("Websocket connected, subscribing to logs...")
            for topic in topics:
                sub_id = await self._ws_subscribe(ws, addresses, topic, on_logs)
                _log(f"Subscribed {topic[:10]}: {sub_id}")

            async for message in ws:
                payload = json.loads(message)
                if payload.get("method") == "eth_subscription":
                    entry = payload.get("params", {}).get("result")
                    if entry:
                        await on_logs([entry])
                elif payload.get("id") is not None and payload.get("error"):
                    _log(f"WS error: {payload}")

    async def _ws_subscribe(self, ws: Any, addresses: List[str], topic: str, on_logs: OnLogs) -> str:
        self._ws_id += 1
        req_id = self._ws_id
        payload = {
            "jsonrpc": "2.0",
            "id": req_id,
            "method": "eth_subscribe",
            "params": ["logs", {"address": addresses, "topics": [topic]}],
        }
        await ws.send(json.dumps(payload))

        while True:
            message = await asyncio.wait_for(ws.recv(), timeout=self.rpc_timeout)
            data = json.loads(message)
            if data.get("id") == req_id:
                if "result" in data:
                    return data["result"]
                raise RuntimeError(f"Subscribe failed: {data}")
            if data.get("method") == "eth_subscription":
                entry = data.get("params", {}).get("result")
                if entry:
                    await on_logs([entry])
