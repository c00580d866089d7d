"""
HTTP server exposing a wallet over JSON-RPC.
"""

from __future__ import annotations

import contextlib
import json
from typing import Any

from aiohttp import web
from loguru import logger

from wbwallet.backends.memory import LocalWallet
from wbwallet.backends.rpc import INVALID_REQUEST, PARSE_ERROR, RPCError, dispatch
from wbwallet.config import Settings


class WalletServer:
    def __init__(self, settings: Settings, wallet: LocalWallet) -> None:
        self.settings = settings
        self.wallet = wallet
        self.app = web.Application()
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None
        self._stopping = False
        self._setup_routes()

    def _setup_routes(self) -> None:
        self.app.router.add_post("/", self._handle_rpc)
        self.app.router.add_get("/health", self._handle_health)

    @staticmethod
    def _error(request_id: Any, error: RPCError) -> web.Response:
        return web.json_response({"jsonrpc": "2.0", "id": request_id, "error": error.to_dict()})

    async def _handle_rpc(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except json.JSONDecodeError as e:
            return self._error(None, RPCError(PARSE_ERROR, f"Parse error: {e}"))

        if not isinstance(body, dict) or not isinstance(body.get("method"), str):
            return self._error(None, RPCError(INVALID_REQUEST, "Invalid request"))

        request_id = body.get("id")
        method = body["method"]
        try:
            result = await dispatch(self.wallet, method, body.get("params"))
        except RPCError as e:
            return self._error(request_id, e)

        logger.debug(f"RPC {method} ok")
        return web.json_response({"jsonrpc": "2.0", "id": request_id, "result": result})

    async def _handle_health(self, _request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "healthy",
                "network": self.wallet.network.value,
                "identity_key": self.wallet.identity_key,
                "height": self.wallet.height,
                "balance": self.wallet.balance(),
            }
        )

    async def start(self) -> None:
        logger.info(
            f"Starting wallet server on {self.settings.http_host}:{self.settings.http_port}"
        )

        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        self.site = web.TCPSite(self.runner, self.settings.http_host, self.settings.http_port)
        await self.site.start()

        logger.info(
            f"Wallet server running at http://{self.settings.http_host}:{self.settings.http_port}"
        )

    async def stop(self) -> None:
        if self._stopping:
            return
        self._stopping = True

        logger.info("Stopping wallet server...")

        if self.site:
            with contextlib.suppress(RuntimeError):
                await self.site.stop()
            self.site = None

        if self.runner:
            with contextlib.suppress(RuntimeError):
                await self.runner.cleanup()
            self.runner = None

        logger.info("Wallet server stopped")
