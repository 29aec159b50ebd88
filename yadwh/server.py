"""aiohttp gateway that turns webhook calls into group updates.

Routes::

    *  /{name}            secret from ?secret=, the X-YADWH-Secret header, or the body
    *  /{name}/{secret}   secret in the path

Updates are blocking Docker calls, so they run on a dedicated thread pool.
Stopping the server drains that pool: a container that was stopped by an
in-flight request is always recreated before shutdown completes.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from logging import getLogger
from typing import Optional

from aiohttp import web

from .config import DEFAULT_IDLE_TIMEOUT_SECONDS
from .config import DEFAULT_WORKERS
from .errors import AuthenticationError
from .errors import AuthFailure
from .errors import YadwhError
from .orchestrator import ContainerOrchestrator

LOG = getLogger(__name__)

SECRET_HEADER = "X-YADWH-Secret"
SECRET_QUERY = "secret"
MAX_BODY_BYTES = 64 * 1024

ORCHESTRATOR_KEY = web.AppKey("orchestrator", ContainerOrchestrator)
EXECUTOR_KEY = web.AppKey("executor", object)


def _first_secret(*candidates: str) -> str:
    for candidate in candidates:
        if candidate and candidate.strip():
            return candidate.strip()
    return ""


async def handle_query_secret(request: web.Request) -> web.Response:
    secret = _first_secret(
        request.query.get(SECRET_QUERY, ""),
        request.headers.get(SECRET_HEADER, ""),
        await request.text(),
    )
    if not secret:
        return web.Response(status=401, text="secret not found")
    return await _process(request, request.match_info["name"], secret)


async def handle_path_secret(request: web.Request) -> web.Response:
    return await _process(request, request.match_info["name"], request.match_info["secret"])


async def _process(request: web.Request, name: str, secret: str) -> web.Response:
    orchestrator = request.app[ORCHESTRATOR_KEY]
    loop = asyncio.get_running_loop()
    try:
        result = await loop.run_in_executor(request.app[EXECUTOR_KEY], orchestrator.process, name, secret)
    except AuthenticationError as error:
        if error.kind is AuthFailure.MISMATCH:
            LOG.warning("Secret mismatch for webhook %s from %s", error.group, request.remote)
        return web.Response(status=error.http_status, text=str(error))
    except YadwhError as error:
        return web.Response(status=getattr(error, "http_status", 500), text=str(error))
    except Exception as error:
        LOG.exception("Unexpected error processing webhook %s", name)
        return web.Response(status=500, text=str(error) or error.__class__.__name__)
    return web.json_response([descriptor.to_dict() for descriptor in result.updated])


def create_app(orchestrator: ContainerOrchestrator, executor: Optional[ThreadPoolExecutor] = None) -> web.Application:
    """Build the webhook application; ``executor=None`` uses the loop's default pool."""
    app = web.Application(client_max_size=MAX_BODY_BYTES)
    app[ORCHESTRATOR_KEY] = orchestrator
    app[EXECUTOR_KEY] = executor
    app.router.add_route("*", "/{name}", handle_query_secret)
    app.router.add_route("*", "/{name}/{secret}", handle_path_secret)
    return app


class HttpServer:
    def __init__(
        self,
        orchestrator: ContainerOrchestrator,
        host: str,
        port: int,
        idle_timeout_seconds: int = DEFAULT_IDLE_TIMEOUT_SECONDS,
        workers: int = DEFAULT_WORKERS,
    ):
        self.host = host
        self.port = port
        self.idle_timeout_seconds = idle_timeout_seconds
        self.executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="yadwh-update")
        self.app = create_app(orchestrator, self.executor)
        self._runner: Optional[web.AppRunner] = None

    @property
    def address(self) -> tuple[str, int]:
        if self._runner is None or not self._runner.addresses:
            return self.host, self.port
        host, port = self._runner.addresses[0][:2]
        return host, port

    async def start(self) -> None:
        runner = web.AppRunner(self.app, keepalive_timeout=self.idle_timeout_seconds)
        await runner.setup()
        self._runner = runner
        site = web.TCPSite(runner, self.host, self.port)
        await site.start()
        host, port = self.address
        LOG.info("Listening on %s:%s", host, port)

    async def stop(self) -> None:
        LOG.info("Shutting down web server")
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        # Handlers may have been cancelled by the runner; their updates still finish here.
        await asyncio.get_running_loop().run_in_executor(None, partial(self.executor.shutdown, wait=True))
