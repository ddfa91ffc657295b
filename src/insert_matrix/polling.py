"""Bounded readiness polling for environment services.

A service that never comes up turns into a ServiceNotReadyError once the
readiness policy's budget is spent; the matrix never hangs on it.

Example:
    >>> from insert_matrix.polling import ReadinessPolicy, wait_for_tcp
    >>> wait_for_tcp("172.18.0.3", 9000, ReadinessPolicy(timeout=60.0), service="minio")
    1
"""

from __future__ import annotations

import socket
import time
from collections.abc import Callable

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger(__name__)


class ReadinessPolicy(BaseModel):
    """How long and how often a service is probed.

    Attributes:
        timeout: Total seconds to wait for the service.
        interval: Seconds between probes.
        connect_timeout: Seconds allowed for a single TCP connect.
    """

    model_config = ConfigDict(frozen=True)

    timeout: float = Field(default=300.0, ge=0.0)
    interval: float = Field(default=1.0, ge=0.01)
    connect_timeout: float = Field(default=2.0, gt=0.0)


class ServiceNotReadyError(TimeoutError):
    """A service did not become ready within its readiness budget."""

    def __init__(
        self,
        target: str,
        waited: float,
        attempts: int,
        last_error: Exception | None = None,
    ) -> None:
        self.target = target
        self.waited = waited
        self.attempts = attempts
        self.last_error = last_error
        message = f"{target} not ready after {waited:.1f}s ({attempts} probes)"
        if last_error is not None:
            message += f": {last_error}"
        super().__init__(message)


def wait_for_condition(
    probe: Callable[[], bool],
    target: str,
    policy: ReadinessPolicy | None = None,
) -> int:
    """Probe until it returns True, within the policy's timeout.

    A probe that raises counts as not ready; its exception is kept and
    reported if the wait gives up.

    Returns:
        Number of probes it took.

    Raises:
        ServiceNotReadyError: The timeout elapsed first.
    """
    policy = policy or ReadinessPolicy()
    deadline = time.monotonic() + policy.timeout
    attempts = 0
    last_error: Exception | None = None

    while True:
        attempts += 1
        try:
            if probe():
                return attempts
        except Exception as e:  # noqa: BLE001
            last_error = e

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ServiceNotReadyError(target, policy.timeout, attempts, last_error)
        logger.debug("service_not_ready", target=target, attempt=attempts)
        time.sleep(min(policy.interval, remaining))


def port_open(host: str, port: int, timeout: float = 2.0) -> bool:
    """True if host:port accepts a TCP connection."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def wait_for_tcp(
    host: str,
    port: int,
    policy: ReadinessPolicy | None = None,
    service: str | None = None,
) -> int:
    """Wait until host:port accepts TCP connections.

    Args:
        host: Container IP or hostname.
        port: Service port.
        policy: Readiness policy, defaults to ``ReadinessPolicy()``.
        service: Service name used in errors, e.g. ``"spark"``.

    Returns:
        Number of probes it took.
    """
    policy = policy or ReadinessPolicy()
    target = f"{service} ({host}:{port})" if service else f"{host}:{port}"
    return wait_for_condition(
        lambda: port_open(host, port, policy.connect_timeout),
        target,
        policy,
    )


__all__ = [
    "ReadinessPolicy",
    "ServiceNotReadyError",
    "port_open",
    "wait_for_condition",
    "wait_for_tcp",
]
