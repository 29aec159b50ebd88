import asyncio
from logging import getLogger
from signal import SIGINT
from signal import SIGTERM
from time import sleep

from docker import DockerClient
from docker.errors import DockerException

from .config import ENV_SECRET_PREFIX
from .config import Settings
from .config import load_credentials
from .config import load_settings
from .errors import RuntimeClientError
from .orchestrator import ContainerOrchestrator
from .runtime import DockerRuntime
from .server import HttpServer
from .utils import configure_logging

LOG = getLogger(__name__)


def build_client_with_retry(settings: Settings) -> DockerClient:
    attempts = settings.docker_connect_retries + 1
    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            client = DockerClient(base_url=settings.docker_host, timeout=settings.docker_timeout_seconds)
            DockerRuntime(client).ping()
            return client
        except (DockerException, RuntimeClientError) as error:
            last_error = error
            if attempt < attempts:
                delay = settings.docker_connect_backoff_seconds * attempt
                LOG.warning("Docker connection attempt %s/%s failed: %s; retrying in %ss", attempt, attempts, error, delay)
                sleep(delay)
    raise SystemExit(f"Unable to connect to Docker after {attempts} attempts: {last_error}")


def install_signal_handlers(stop_signal: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _handle(signum: int) -> None:
        LOG.info("Received signal %s", signum)
        stop_signal.set()

    for signum in (SIGTERM, SIGINT):
        loop.add_signal_handler(signum, _handle, signum)


async def run_server(server: HttpServer) -> None:
    stop_signal = asyncio.Event()
    install_signal_handlers(stop_signal)
    try:
        await server.start()
    except OSError:
        await server.stop()
        raise
    try:
        await stop_signal.wait()
    finally:
        await server.stop()


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    credentials = load_credentials()
    if not len(credentials):
        LOG.error("No secrets found.")
        raise SystemExit(f"Specify them by setting the environment variable {ENV_SECRET_PREFIX}<name>=<secret>")
    LOG.info("Configured webhooks: %s", ", ".join(credentials.names()))

    LOG.info("Connecting to Docker at %s", settings.docker_host)
    client = build_client_with_retry(settings)
    runtime = DockerRuntime(client)
    orchestrator = ContainerOrchestrator(
        runtime,
        credentials,
        label_key=settings.label_key,
        stop_timeout_seconds=settings.stop_timeout_seconds,
    )
    server = HttpServer(
        orchestrator,
        settings.listen_host,
        settings.listen_port,
        idle_timeout_seconds=settings.idle_timeout_seconds,
        workers=settings.workers,
    )
    try:
        asyncio.run(run_server(server))
    except OSError as error:
        raise SystemExit(f"Cannot listen on {settings.listen_host}:{settings.listen_port}: {error}") from error
    finally:
        runtime.close()


if __name__ == "__main__":
    main()
