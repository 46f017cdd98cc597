"""HTTP status surface: /health and /status"""

import logging
from typing import Optional

from aiohttp import web

logger = logging.getLogger(__name__)

ENGINE_KEY = web.AppKey('engine', object)


async def health(request: web.Request) -> web.Response:
    return web.Response(text='ok')


async def status(request: web.Request) -> web.Response:
    """Current state plus full trading history"""
    engine = request.app.get(ENGINE_KEY)
    if engine is None:
        return web.json_response({'error': 'service not ready'}, status=503)
    report = await engine.get_status()
    return web.json_response(report.to_dict())


def create_app(engine=None) -> web.Application:
    app = web.Application()
    if engine is not None:
        app[ENGINE_KEY] = engine
    app.router.add_get('/health', health)
    app.router.add_get('/status', status)
    return app


class StatusServer:
    """Runs the status app alongside the trading engine"""

    def __init__(self, engine, host: str, port: int):
        self.app = create_app(engine)
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"🌐 Status server listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
