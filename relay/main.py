from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
from typing import Any

from aiohttp import web

from common.config import load_yaml, with_defaults
from common.log import setup_logging
from relay.service import RelayService
from relay.web import create_web_app

RELAY_DEFAULTS: dict[str, Any] = {
    "bind_host": "0.0.0.0",
    "bind_port": 1004,
    "request_timeout": 30,
    "run_request_timeout": 60,
    "alive_window": 60,
    "log_level": "info",
    "log_file": None,
}


class RelayApp:
    def __init__(self, config: dict[str, Any]):
        self.logger = logging.getLogger("relay.main")
        self.config = config
        self.service = RelayService(
            request_timeout=float(config["request_timeout"]),
            run_timeout=float(config["run_request_timeout"]),
            alive_window=float(config["alive_window"]),
        )
        self.web_app = create_web_app(self.service)
        self._runner: web.AppRunner | None = None
        self._stop_event = asyncio.Event()
        self._shutdown_lock = asyncio.Lock()
        self._shutdown_done = False

    async def start(self) -> None:
        bind_host = str(self.config["bind_host"])
        bind_port = int(self.config["bind_port"])
        self._runner = web.AppRunner(self.web_app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, host=bind_host, port=bind_port)
        await site.start()
        self.logger.info("relay listening on %s:%s, agents connect to /ws", bind_host, bind_port)
        await self._stop_event.wait()

    async def shutdown(self) -> None:
        async with self._shutdown_lock:
            if self._shutdown_done:
                return
            self._shutdown_done = True
            self.logger.info("relay shutting down, %d agent(s) connected", len(self.service.registry))
            await self.service.close_all()
            if self._runner:
                with contextlib.suppress(Exception):
                    await self._runner.cleanup()
                self._runner = None
            self._stop_event.set()


def _install_signal_handlers(app: RelayApp) -> None:
    loop = asyncio.get_running_loop()

    async def _shutdown() -> None:
        await app.shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.create_task(_shutdown()))
        except NotImplementedError:
            signal.signal(sig, lambda *_: asyncio.create_task(_shutdown()))


def load_relay_config(config_path: str) -> dict[str, Any]:
    return with_defaults(load_yaml(config_path), RELAY_DEFAULTS)


async def _amain(config_path: str) -> None:
    cfg = load_relay_config(config_path)
    setup_logging(cfg.get("log_level", "info"), cfg.get("log_file"))
    app = RelayApp(cfg)
    _install_signal_handlers(app)
    await app.start()


def main() -> None:
    parser = argparse.ArgumentParser(description="Workspace Relay")
    parser.add_argument("config", help="path to relay yaml config")
    args = parser.parse_args()
    asyncio.run(_amain(args.config))


if __name__ == "__main__":
    main()
