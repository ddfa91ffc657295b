"""Environment controller backed by docker compose.

Each scenario instance gets its own compose project, so concurrently active
environments never share containers, networks or volumes. Services are
addressed by container IP, which keeps host ports out of the picture.

Lifecycle:
    start(project, topology) -> Environment   # blocks until services are ready
    address_of(env, service) -> "host:port"
    stop(env)                                 # always releases the project

Example:
    controller = EnvironmentController(MatrixSettings())
    env = controller.start(unique_project_name("no_partition_storage"), Topology.ICEBERG_FS)
    try:
        endpoint = f"http://{controller.address_of(env, 'minio')}"
    finally:
        controller.stop(env)
"""

from __future__ import annotations

import re
import subprocess
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from insert_matrix.errors import EnvironmentProvisionError, EnvironmentTeardownError
from insert_matrix.models import MatrixSettings, Topology
from insert_matrix.polling import ReadinessPolicy, ServiceNotReadyError, wait_for_tcp

logger = structlog.get_logger(__name__)

# Compose project name constraints
MAX_PROJECT_NAME_LENGTH = 63
COMPOSE_FILE_NAME = "docker-compose.yml"

CommandRunner = Callable[[list[str], float], "subprocess.CompletedProcess[str]"]
ReadyCheck = Callable[[str, int, float], None]


def _run_docker(args: list[str], timeout: float) -> subprocess.CompletedProcess[str]:
    """Run a docker CLI command with timeout.

    Args:
        args: docker arguments.
        timeout: Command timeout in seconds.

    Returns:
        Completed process result.
    """
    return subprocess.run(
        ["docker", *args],
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )


def _wait_for_port(host: str, port: int, timeout: float) -> None:
    wait_for_tcp(host, port, ReadinessPolicy(timeout=timeout))


def unique_project_name(prefix: str = "insert") -> str:
    """Generate a unique compose project name.

    Args:
        prefix: Human-readable prefix, typically the instance name.

    Returns:
        Lowercase name made of ``[a-z0-9_-]`` ending in an 8-char uuid suffix,
        at most 63 characters long.

    Example:
        >>> a = unique_project_name("insert_no_partition")
        >>> b = unique_project_name("insert_no_partition")
        >>> a != b
        True
    """
    normalized = re.sub(r"[^a-z0-9_-]", "", prefix.lower()).strip("-_")
    suffix = uuid.uuid4().hex[:8]
    max_prefix_length = MAX_PROJECT_NAME_LENGTH - len(suffix) - 1
    normalized = normalized[:max_prefix_length].rstrip("-_")
    if not normalized:
        return f"env-{suffix}"
    return f"{normalized}-{suffix}"


@dataclass(frozen=True)
class Environment:
    """A running, isolated set of backing services.

    Attributes:
        project_name: Compose project name (unique per instance).
        topology: Topology that was realized.
        addresses: Service name mapped to "host:port".
    """

    project_name: str
    topology: Topology
    addresses: dict[str, str] = field(default_factory=dict)

    def address_of(self, service: str) -> str:
        """Network address of a service as "host:port".

        Raises:
            EnvironmentProvisionError: If the service is not part of this
                environment.
        """
        try:
            return self.addresses[service]
        except KeyError:
            msg = f"Service '{service}' is not part of topology {self.topology.value}"
            raise EnvironmentProvisionError(
                msg,
                project=self.project_name,
                details={"available": sorted(self.addresses)},
            ) from None

    def host_of(self, service: str) -> str:
        """Host part of a service address."""
        return self.address_of(service).rsplit(":", 1)[0]


class EnvironmentController:
    """Starts and stops docker compose environments.

    Thread-safe: instances running on different threads may share one
    controller. The controller tracks active projects so callers can assert
    that every started environment was released.

    Args:
        settings: Matrix settings (compose directory and timeouts).
        runner: Callable running a docker command, ``(args, timeout)``.
            Defaults to invoking the ``docker`` CLI.
        ready_check: Callable blocking until ``host:port`` accepts
            connections, ``(host, port, timeout)``. Defaults to TCP polling.
    """

    def __init__(
        self,
        settings: MatrixSettings,
        runner: CommandRunner | None = None,
        ready_check: ReadyCheck | None = None,
    ) -> None:
        self._settings = settings
        self._run = runner or _run_docker
        self._ready_check = ready_check or _wait_for_port
        self._active: set[str] = set()
        self._lock = threading.Lock()

    @property
    def active_count(self) -> int:
        """Number of environments started and not yet stopped."""
        with self._lock:
            return len(self._active)

    def compose_file(self, topology: Topology) -> Path:
        """Compose file realizing a topology."""
        return self._settings.compose_dir / topology.value / COMPOSE_FILE_NAME

    def _compose_args(self, project: str, topology: Topology, *args: str) -> list[str]:
        return ["compose", "-p", project, "-f", str(self.compose_file(topology)), *args]

    def _compose(
        self,
        project: str,
        topology: Topology,
        *args: str,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        effective_timeout = timeout or self._settings.command_timeout
        return self._run(self._compose_args(project, topology, *args), effective_timeout)

    def start(self, project_name: str, topology: Topology) -> Environment:
        """Start a topology under a fresh compose project.

        Blocks until every service of the topology accepts connections, up to
        ``settings.ready_timeout``. On any failure the partially started
        project is torn down before the error is raised.

        Args:
            project_name: Unique compose project name.
            topology: Topology to realize.

        Returns:
            The running Environment.

        Raises:
            EnvironmentProvisionError: If the name is already active, the
                compose file is missing, or services fail to start or become
                ready.
        """
        log = logger.bind(project=project_name, topology=topology.value)

        compose_file = self.compose_file(topology)
        if not compose_file.is_file():
            msg = f"Compose file not found: {compose_file}"
            raise EnvironmentProvisionError(msg, project=project_name)

        with self._lock:
            if project_name in self._active:
                msg = "Environment project name already in use"
                raise EnvironmentProvisionError(msg, project=project_name)
            self._active.add(project_name)

        log.info("environment_starting", services=sorted(topology.services))
        try:
            env = self._bring_up(project_name, topology)
        except Exception as e:
            log.error("environment_start_failed", error=str(e))
            try:
                self._bring_down(project_name, topology)
            except EnvironmentTeardownError as teardown_error:
                log.error("environment_cleanup_failed", error=str(teardown_error))
            finally:
                with self._lock:
                    self._active.discard(project_name)
            if isinstance(e, EnvironmentProvisionError):
                raise
            msg = f"Failed to start environment: {e}"
            raise EnvironmentProvisionError(msg, project=project_name) from e

        log.info("environment_ready", addresses=env.addresses)
        return env

    def _bring_up(self, project_name: str, topology: Topology) -> Environment:
        timeout = self._settings.ready_timeout
        result = self._compose(
            project_name,
            topology,
            "up",
            "-d",
            "--wait",
            "--wait-timeout",
            str(int(timeout)),
            timeout=timeout + self._settings.command_timeout,
        )
        if result.returncode != 0:
            msg = f"docker compose up failed: {result.stderr.strip()}"
            raise EnvironmentProvisionError(msg, project=project_name)

        addresses: dict[str, str] = {}
        for service, port in topology.services.items():
            host = self._container_ip(project_name, topology, service)
            try:
                self._ready_check(host, port, timeout)
            except ServiceNotReadyError as e:
                msg = f"Service '{service}' did not become ready"
                raise EnvironmentProvisionError(
                    msg, project=project_name, details={"address": f"{host}:{port}"}
                ) from e
            addresses[service] = f"{host}:{port}"

        return Environment(project_name=project_name, topology=topology, addresses=addresses)

    def _container_ip(self, project_name: str, topology: Topology, service: str) -> str:
        ps = self._compose(project_name, topology, "ps", "-q", service)
        container_id = ps.stdout.strip().splitlines()[0] if ps.stdout.strip() else ""
        if ps.returncode != 0 or not container_id:
            msg = f"No running container for service '{service}'"
            raise EnvironmentProvisionError(
                msg, project=project_name, details={"stderr": ps.stderr.strip()}
            )

        inspect = self._run(
            [
                "inspect",
                "-f",
                "{{range .NetworkSettings.Networks}}{{.IPAddress}} {{end}}",
                container_id,
            ],
            self._settings.command_timeout,
        )
        ips = inspect.stdout.split()
        if inspect.returncode != 0 or not ips:
            msg = f"Cannot resolve container IP for service '{service}'"
            raise EnvironmentProvisionError(
                msg, project=project_name, details={"stderr": inspect.stderr.strip()}
            )
        return ips[0]

    def stop(self, env: Environment) -> None:
        """Tear an environment down, releasing containers and volumes.

        The project is released from the active set even when the teardown
        command fails. Stopping an environment that is not active is a no-op.

        Raises:
            EnvironmentTeardownError: If docker compose down fails.
        """
        with self._lock:
            if env.project_name not in self._active:
                logger.debug("environment_already_stopped", project=env.project_name)
                return
            self._active.discard(env.project_name)

        logger.info("environment_stopping", project=env.project_name)
        self._bring_down(env.project_name, env.topology)
        logger.info("environment_stopped", project=env.project_name)

    def _bring_down(self, project_name: str, topology: Topology) -> None:
        try:
            result = self._compose(project_name, topology, "down", "-v", "--remove-orphans")
        except subprocess.TimeoutExpired as e:
            msg = "docker compose down timed out"
            raise EnvironmentTeardownError(msg, project=project_name) from e
        except OSError as e:
            msg = f"docker compose down could not run: {e}"
            raise EnvironmentTeardownError(msg, project=project_name) from e
        if result.returncode != 0:
            msg = f"docker compose down failed: {result.stderr.strip()}"
            raise EnvironmentTeardownError(msg, project=project_name)

    def address_of(self, env: Environment, service: str) -> str:
        """Network address of a service in env as "host:port"."""
        return env.address_of(service)


__all__ = [
    "Environment",
    "EnvironmentController",
    "unique_project_name",
]
