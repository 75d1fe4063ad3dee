"""
Service Provisioner
===================
Starts the ephemeral service dependency (the test-fixture server) for a run
and guarantees it is gone when the run ends.

Lifecycle:
    1. Create a per-run bridge network
    2. Pull the service image
    3. Create the service container, attach it with the fixed hostname as
       network alias, start it
    4. Attach the job container to the same network
    5. Probe readiness over the randomly published host port (httpx)
    6. On exit: detach job container, remove service, remove network

Failure Semantics:
    Image pull failure, start failure or readiness timeout raise
    InfrastructureError. There is exactly one provisioning attempt per run.
    Inside the network the service is always <hostname>:<port>; the host
    port is only used for the readiness probe, so concurrent runs never
    collide on it.
"""
import time
import logging
from dataclasses import dataclass
from typing import List, Optional

import docker
import httpx
from docker.errors import APIError, ImageNotFound, NotFound

from covpipe.core.errors import InfrastructureError
from covpipe.parser.workflow_reader import ServiceConfig

logger = logging.getLogger(__name__)

_PROBE_INTERVAL = 2.0


@dataclass
class ServiceInstance:
    """A running service dependency."""
    image: str
    hostname: str
    port: int
    container_id: str
    network: str
    host_port: Optional[int] = None

    @property
    def internal_url(self) -> str:
        return f"http://{self.hostname}:{self.port}"


class ServiceProvisioner:
    """
    Owns the service container and the run network.

    Usage:
        with ServiceProvisioner(client, service_cfg, run_id) as provisioner:
            provisioner.attach(job.container)
            ...
    """

    def __init__(
        self,
        client: docker.DockerClient,
        service: ServiceConfig,
        run_id: str,
        ready_timeout: Optional[int] = None,
        probe_interval: float = _PROBE_INTERVAL,
    ) -> None:
        self.client = client
        self.service = service
        self.run_id = run_id
        self.ready_timeout = ready_timeout if ready_timeout is not None else service.ready_timeout
        self.probe_interval = probe_interval
        self.network_name = f"covpipe-{run_id}"
        self.network = None
        self.container = None
        self.instance: Optional[ServiceInstance] = None
        self._attached: List = []

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------
    def start(self) -> ServiceInstance:
        svc = self.service
        logger.info(
            "Provisioning service | image=%s | host=%s:%d | run=%s",
            svc.image, svc.name, svc.port, self.run_id,
        )
        try:
            self.network = self.client.networks.create(
                self.network_name,
                driver="bridge",
                labels={"project": "covpipe", "run": self.run_id},
            )
            self.client.images.pull(svc.image)
            self.container = self.client.containers.create(
                image=svc.image,
                environment=dict(svc.env),
                hostname=svc.name,
                ports={f"{svc.port}/tcp": None},
                name=f"covpipe-{svc.name}-{self.run_id}",
                labels={"project": "covpipe", "role": "service", "run": self.run_id},
            )
            self.network.connect(self.container, aliases=[svc.name])
            self.container.start()
        except ImageNotFound as e:
            raise InfrastructureError(f"Service image '{svc.image}' could not be pulled: {e}") from e
        except APIError as e:
            raise InfrastructureError(f"Service '{svc.name}' failed to start: {e}") from e

        host_port = self._published_port()
        self.instance = ServiceInstance(
            image=svc.image,
            hostname=svc.name,
            port=svc.port,
            container_id=self.container.short_id,
            network=self.network_name,
            host_port=host_port,
        )
        self.wait_ready()
        return self.instance

    def _published_port(self) -> Optional[int]:
        self.container.reload()
        ports = self.container.attrs.get("NetworkSettings", {}).get("Ports") or {}
        bindings = ports.get(f"{self.service.port}/tcp") or []
        if not bindings:
            return None
        return int(bindings[0]["HostPort"])

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------
    def wait_ready(self) -> None:
        """Poll the health endpoint until it answers 2xx or the budget runs out."""
        if self.instance is None or self.instance.host_port is None:
            raise InfrastructureError(f"Service '{self.service.name}' has no published port")

        url = f"http://127.0.0.1:{self.instance.host_port}{self.service.health_path}"
        deadline = time.monotonic() + self.ready_timeout
        attempts = 0

        with httpx.Client(timeout=5.0) as client:
            while True:
                attempts += 1
                try:
                    response = client.get(url)
                    if response.is_success:
                        logger.info(
                            "Service %s ready after %d probe(s)", self.service.name, attempts,
                        )
                        return
                    logger.debug("Readiness probe %d: HTTP %d", attempts, response.status_code)
                except httpx.HTTPError as e:
                    logger.debug("Readiness probe %d failed: %s", attempts, e)

                if not self._container_running():
                    raise InfrastructureError(
                        f"Service '{self.service.name}' exited before becoming ready"
                    )
                if time.monotonic() >= deadline:
                    raise InfrastructureError(
                        f"Service '{self.service.name}' not ready after {self.ready_timeout}s"
                    )
                time.sleep(self.probe_interval)

    def _container_running(self) -> bool:
        try:
            self.container.reload()
        except NotFound:
            return False
        return self.container.status in ("created", "running")

    # ------------------------------------------------------------------
    # Networking
    # ------------------------------------------------------------------
    def attach(self, container) -> None:
        """Join another container (the job) to the run network."""
        if self.network is None:
            raise InfrastructureError("Run network does not exist")
        try:
            self.network.connect(container)
        except APIError as e:
            raise InfrastructureError(f"Could not attach container to {self.network_name}: {e}") from e
        self._attached.append(container)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    def stop(self) -> None:
        """Remove the service and the run network. Never raises."""
        if self.network is not None:
            for container in self._attached:
                try:
                    self.network.disconnect(container, force=True)
                except Exception:
                    logger.warning("Failed to detach container from %s", self.network_name, exc_info=True)
        self._attached = []

        if self.container is not None:
            try:
                self.container.remove(force=True)
                logger.info("Service container %s destroyed", self.container.short_id)
            except Exception:
                logger.warning("Failed to remove service container", exc_info=True)
            self.container = None

        if self.network is not None:
            try:
                self.network.remove()
            except Exception:
                logger.warning("Failed to remove network %s", self.network_name, exc_info=True)
            self.network = None

    def __enter__(self) -> "ServiceProvisioner":
        try:
            self.start()
        except Exception:
            self.stop()
            raise
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
