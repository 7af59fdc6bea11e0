"""
Edge runtime detection and control

Finds the Caddy instance that actually owns the public port (a container or
a systemd unit), picks the one config file a run may edit, and wraps the
validate / reload / restart commands for it.
"""

import logging
import shutil
import time
from pathlib import Path
from typing import Callable, List, Optional, Protocol

from lib.errors import CommandError, EdgeDetectionError
from lib.models import EdgeMode, EdgeOwner, EdgeRuntime, SwitchConfig
from lib.runtime import ContainerRuntime, HostRuntime
from lib.utils import retry

logger = logging.getLogger(__name__)


def publishes_port(ports: str, port: int) -> bool:
    return f":{port}->{port}/tcp" in ports


def find_edge_container(
    config: SwitchConfig, runtime: ContainerRuntime, preferred: Optional[str] = None
) -> Optional[str]:
    """Running container publishing the public port, preferring the named one.

    Falls back to any running container that looks like Caddy when none
    publishes the port.
    """
    rows = runtime.running_containers()
    names = {name for name, _, _ in rows}
    preferred = preferred or config.edge_container

    if preferred and preferred in names:
        for name, _, ports in rows:
            if name == preferred and publishes_port(ports, config.public_port):
                return name

    for name, image, ports in rows:
        if "caddy" in f"{name} {image}".lower() and publishes_port(ports, config.public_port):
            return name
    return None


def guess_caddy_container(config: SwitchConfig, runtime: ContainerRuntime, preferred: Optional[str]) -> Optional[str]:
    rows = runtime.running_containers()
    preferred = preferred or config.edge_container
    if preferred and any(name == preferred for name, _, _ in rows):
        return preferred
    for name, image, _ in rows:
        if "caddy" in f"{name} {image}".lower():
            return name
    return None


def detect_edge(
    config: SwitchConfig,
    runtime: ContainerRuntime,
    host: HostRuntime,
    edge_container: Optional[str] = None,
) -> EdgeRuntime:
    """Work out who serves the public port and which config file to edit. No side effects.

    Raises:
        EdgeDetectionError: no edge owns the port, or no editable config exists
    """
    port = config.public_port
    listeners = host.port_listeners(port)
    docker_owns_port = any("docker-proxy" in line for line in listeners)
    container = find_edge_container(config, runtime, edge_container)

    local_copy = config.repo_path(config.local_config_file)

    if docker_owns_port or container:
        if container is None:
            container = guess_caddy_container(config, runtime, edge_container)
        if container is None:
            raise EdgeDetectionError(
                f"Docker owns :{port} but no Caddy container could be identified",
                diagnostics=[
                    "docker ps --format 'table {{.Names}}\\t{{.Image}}\\t{{.Ports}}'",
                    f"ss -ltnp | grep ':{port} '",
                ],
            )

        source = runtime.mount_source(container, str(config.edge_config_path))
        if source and Path(source).is_file():
            mode = EdgeMode.container_mounted
            runtime_file: Optional[Path] = Path(source)
        else:
            mode = EdgeMode.container_internal
            runtime_file = None

        target = runtime_file if runtime_file else local_copy
        if not target.is_file():
            raise EdgeDetectionError(
                f"Edge container {container} has no bind-mounted Caddyfile and no local copy exists at {local_copy}",
                diagnostics=[
                    f"docker inspect '{container}' --format '{{{{json .Mounts}}}}'",
                    f"docker cp '{container}:{config.edge_config_path}' '{local_copy}'",
                ],
            )
        return EdgeRuntime(
            owner=EdgeOwner.docker,
            mode=mode,
            container=container,
            image=runtime.container_image(container),
            runtime_file=runtime_file,
            target_file=target,
        )

    unit_state = host.unit_state(config.edge_service_unit)
    if unit_state == "active" and any("caddy" in line for line in listeners):
        runtime_file = config.host_config_path if config.host_config_path.is_file() else None
        target = runtime_file or local_copy
        if not target.is_file():
            raise EdgeDetectionError(
                f"Host Caddy owns :{port} but neither {config.host_config_path} nor {local_copy} exists",
                diagnostics=[f"systemctl cat {config.edge_service_unit}"],
            )
        return EdgeRuntime(owner=EdgeOwner.host, mode=EdgeMode.host, runtime_file=runtime_file, target_file=target)

    raise EdgeDetectionError(
        f"Could not detect an active Caddy edge on :{port} (docker or host)",
        diagnostics=[
            f"ss -ltnp | grep ':{port} '",
            "docker ps --format 'table {{.Names}}\\t{{.Image}}\\t{{.Ports}}'",
            f"systemctl status {config.edge_service_unit}",
        ],
    )


class ProxyController(Protocol):
    """Two-phase control of the edge: validate first, then reload"""

    def validate(self, path: Path) -> bool: ...

    def validate_candidate(self, path: Path) -> bool: ...

    def publish(self, path: Path) -> None: ...

    def reload(self) -> bool: ...

    def restart(self) -> bool: ...

    def wait_running(self, timeout: int) -> bool: ...

    def diagnostics(self) -> List[str]: ...


class ContainerProxy:
    """Caddy running in a container, driven with docker exec"""

    def __init__(
        self,
        config: SwitchConfig,
        runtime: ContainerRuntime,
        edge: EdgeRuntime,
        sleep=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.runtime = runtime
        self.edge = edge
        self.container = edge.container
        self.inner_path = str(config.edge_config_path)
        self.sleep = sleep
        self.clock = clock

    def _caddy(self, *args: str) -> bool:
        return self.runtime.exec_ok(self.container, ["caddy", *args])

    def push(self, path: Path) -> None:
        """Copy the edited file into the container (no bind mount to carry it)"""
        logger.info(f"Copying {path} into {self.container}:{self.inner_path}")
        self.runtime.copy_into(path, self.container, self.inner_path)

    def publish(self, path: Path) -> None:
        """Make a restored file the one the container reads again"""
        if self.edge.mode == EdgeMode.container_internal:
            self.push(path)

    def validate(self, path: Path) -> bool:
        self.publish(path)
        if self.config.enable_fmt:
            self._caddy("fmt", "--overwrite", self.inner_path)
        return self._caddy("validate", "--config", self.inner_path, "--adapter", "caddyfile")

    def validate_candidate(self, path: Path) -> bool:
        """Validate a file that is not (yet) the live config, using the edge image"""
        if not self.edge.image:
            return False
        return self.runtime.validate_file(self.edge.image, path, self.inner_path)

    def reload(self) -> bool:
        return self._caddy("reload", "--config", self.inner_path, "--adapter", "caddyfile")

    def restart(self) -> bool:
        logger.warning(f"Restarting edge container {self.container}")
        try:
            self.runtime.restart(self.container)
        except CommandError as e:
            logger.error(f"Edge restart failed: {e}")
            return False
        return self._caddy("validate", "--config", self.inner_path, "--adapter", "caddyfile")

    def wait_running(self, timeout: int) -> bool:
        kwargs = {"sleep": self.sleep} if self.sleep else {}
        return bool(
            retry(
                lambda: self.runtime.container_status(self.container) == "running",
                attempts=timeout + 1,
                interval=1,
                deadline=self.clock() + timeout,
                clock=self.clock,
                **kwargs,
            )
        )

    def diagnostics(self) -> List[str]:
        return [
            f"docker logs --tail=120 '{self.container}'",
            f"docker exec '{self.container}' caddy validate --config {self.inner_path} --adapter caddyfile",
        ]


class HostProxy:
    """Caddy running as a systemd unit"""

    def __init__(
        self,
        config: SwitchConfig,
        host: HostRuntime,
        edge: EdgeRuntime,
        sleep=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.host = host
        self.edge = edge
        self.unit = config.edge_service_unit
        self.sleep = sleep
        self.clock = clock

    def validate(self, path: Path) -> bool:
        if shutil.which("caddy") is None:
            logger.warning("caddy binary not found on host; skipping validation")
            return True
        if self.config.enable_fmt:
            self.host.run_ok(["caddy", "fmt", "--overwrite", str(path)])
        return self.host.run_ok(["caddy", "validate", "--config", str(path), "--adapter", "caddyfile"])

    def validate_candidate(self, path: Path) -> bool:
        return self.validate(path)

    def publish(self, path: Path) -> None:
        # the unit reads the file in place
        pass

    def reload(self) -> bool:
        if self.host.unit_state(self.unit) != "active":
            logger.error(f"Host unit {self.unit} is not active; refusing reload")
            return False
        return self.host.run_ok(["systemctl", "reload", self.unit])

    def restart(self) -> bool:
        logger.warning(f"Restarting host unit {self.unit}")
        return self.host.run_ok(["systemctl", "restart", self.unit])

    def wait_running(self, timeout: int) -> bool:
        kwargs = {"sleep": self.sleep} if self.sleep else {}
        return bool(
            retry(
                lambda: self.host.unit_state(self.unit) == "active",
                attempts=timeout + 1,
                interval=1,
                deadline=self.clock() + timeout,
                clock=self.clock,
                **kwargs,
            )
        )

    def diagnostics(self) -> List[str]:
        return [
            f"journalctl -u {self.unit} -n 120 --no-pager",
            f"caddy validate --config '{self.edge.target_file}' --adapter caddyfile",
        ]


def proxy_for(config: SwitchConfig, edge: EdgeRuntime, runtime: ContainerRuntime, host: HostRuntime, sleep=None):
    if edge.owner == EdgeOwner.docker:
        return ContainerProxy(config, runtime, edge, sleep=sleep)
    return HostProxy(config, host, edge, sleep=sleep)


def reload_edge(proxy: ProxyController, restart_fallback: bool = True) -> bool:
    """Reload, falling back to one restart of the edge when reload fails"""
    if proxy.reload():
        logger.info("Edge reloaded")
        return True
    if not restart_fallback:
        logger.error("Edge reload failed")
        return False
    logger.warning("Edge reload failed; attempting restart fallback")
    return proxy.restart()
