from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import socket
from pathlib import Path
from typing import Any

import aiohttp

from agent.executor import MAX_OUTPUT_SIZE, SandboxedExecutor
from agent.session import AgentSession
from common.config import ConfigError, load_yaml, require_keys, resolve_path_field, with_defaults
from common.connection import MessageConnection
from common.log import setup_logging
from common.protocol import MAX_FRAME_SIZE

AGENT_DEFAULTS: dict[str, Any] = {
    "agent_name": "",
    "heartbeat_interval": 30,
    "reconnect_delay": 5,
    "run_timeout": 120,
    "max_output": MAX_OUTPUT_SIZE,
    "log_level": "info",
    "log_file": None,
}


class AgentApp:
    def __init__(self, config: dict[str, Any]):
        self.logger = logging.getLogger("agent.main")
        self.config = config
        self.relay_url = str(config["relay_url"])
        self.executor = SandboxedExecutor(
            config["work_dir"],
            run_timeout=float(config["run_timeout"]),
            max_output=int(config["max_output"]),
        )
        self._http: aiohttp.ClientSession | None = None
        self.session = AgentSession(
            name=str(config.get("agent_name") or socket.gethostname()),
            executor=self.executor,
            connector=self._open_connection,
            heartbeat_interval=float(config["heartbeat_interval"]),
            reconnect_delay=float(config["reconnect_delay"]),
        )

    async def _open_connection(self) -> MessageConnection:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        self.logger.info("connecting to %s", self.relay_url)
        ws = await self._http.ws_connect(self.relay_url, max_msg_size=MAX_FRAME_SIZE, heartbeat=None)
        return MessageConnection(ws, peer=self.relay_url)

    async def start(self) -> None:
        try:
            await self.session.run()
        finally:
            await self._close_http()

    async def shutdown(self) -> None:
        self.logger.info("agent %s shutting down", self.session.name)
        await self.session.stop()
        await self._close_http()

    async def _close_http(self) -> None:
        http, self._http = self._http, None
        if http is not None and not http.closed:
            await http.close()


def _install_signal_handlers(app: AgentApp) -> None:
    loop = asyncio.get_running_loop()

    async def _shutdown() -> None:
        await app.shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.create_task(_shutdown()))
        except NotImplementedError:
            signal.signal(sig, lambda *_: asyncio.create_task(_shutdown()))


def load_agent_config(config_path: str) -> dict[str, Any]:
    cfg = with_defaults(load_yaml(config_path), AGENT_DEFAULTS)
    require_keys(cfg, ["relay_url", "work_dir"], where="agent config")
    resolve_path_field(cfg, "work_dir", config_path)
    if not Path(cfg["work_dir"]).is_dir():
        raise ConfigError(f"work_dir does not exist or is not a directory: {cfg['work_dir']}")
    return cfg


async def _amain(config_path: str) -> None:
    cfg = load_agent_config(config_path)
    setup_logging(cfg.get("log_level", "info"), cfg.get("log_file"))
    app = AgentApp(cfg)
    _install_signal_handlers(app)
    await app.start()


def main() -> None:
    parser = argparse.ArgumentParser(description="Workspace Relay Agent")
    parser.add_argument("config", help="path to agent yaml config")
    args = parser.parse_args()
    asyncio.run(_amain(args.config))


if __name__ == "__main__":
    main()
