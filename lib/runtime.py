"""
Runtime state probe

Narrow interfaces over the container runtime and the host, plus the
implementations that drive the docker / ss / systemctl CLIs. The switch
coordinator only sees the protocols, so tests swap in fakes.
"""

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Protocol, Tuple

from lib.errors import CommandError
from lib.models import Slot, SlotHealth, SlotState, SwitchConfig
from lib.utils import command_ok, run_command

logger = logging.getLogger(__name__)

# (name, image, ports) as printed by docker ps
ContainerRow = Tuple[str, str, str]

_FRACTION = re.compile(r"\.(\d+)")


def parse_started_at(value: str) -> Optional[datetime]:
    """Parse docker's RFC3339 timestamp (nanosecond precision); the zero time means never started"""
    if not value or value.startswith("0001-01-01"):
        return None
    value = value.strip().replace("Z", "+00:00")
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.debug(f"Unparseable container start time: {value}")
        return None


def health_from_state(state: dict) -> SlotHealth:
    """Map docker's State object to a slot health value"""
    health = (state.get("Health") or {}).get("Status")
    if health in ("healthy", "unhealthy"):
        return SlotHealth(health)
    if health == "starting":
        return SlotHealth.unknown
    if state.get("Running"):
        return SlotHealth.running
    return SlotHealth.unknown


class ContainerRuntime(Protocol):
    """What the switch needs from the container runtime"""

    def compose_up(self, service: str) -> None:
        """Build and start one compose service without touching its dependencies"""
        ...

    def compose_ps(self) -> str: ...

    def slot_state(self, slot: Slot) -> SlotState: ...

    def container_exists(self, name: str) -> bool: ...

    def container_status(self, name: str) -> Optional[str]: ...

    def container_image(self, name: str) -> Optional[str]: ...

    def running_containers(self) -> List[ContainerRow]: ...

    def mount_source(self, container: str, destination: str) -> Optional[str]: ...

    def networks(self, container: str) -> List[str]: ...

    def connect_network(self, network: str, container: str) -> bool: ...

    def exec_ok(self, container: str, args: List[str]) -> bool: ...

    def copy_into(self, source: Path, container: str, destination: str) -> None: ...

    def restart(self, container: str) -> None: ...

    def run_probe(self, network: str, image: str, url: str, max_time: int) -> bool: ...

    def validate_file(self, image: str, source: Path, destination: str) -> bool: ...


class HostRuntime(Protocol):
    """What the switch needs from the host itself"""

    def port_listeners(self, port: int) -> List[str]: ...

    def unit_state(self, unit: str) -> str: ...

    def run_ok(self, args: List[str]) -> bool: ...


class DockerRuntime:
    """ContainerRuntime backed by the docker and docker compose CLIs"""

    def __init__(self, config: SwitchConfig):
        self.config = config
        self.timeout = config.command_timeout
        self._project = config.compose_project

    @property
    def compose_file(self) -> Path:
        return self.config.repo_path(self.config.compose_file)

    @property
    def project(self) -> Optional[str]:
        """Compose project name; adopted from existing slot containers to avoid name conflicts"""
        if self._project is None:
            for service in (self.config.blue_service, self.config.green_service):
                if not self.container_exists(service):
                    continue
                result = run_command(
                    ["docker", "inspect", "-f", '{{ index .Config.Labels "com.docker.compose.project" }}', service],
                    timeout=self.timeout,
                    check=False,
                )
                label = result.stdout.strip()
                if result.returncode == 0 and label and label != "<no value>":
                    logger.debug(f"Adopted compose project '{label}' from container {service}")
                    self._project = label
                    break
            else:
                self._project = ""
        return self._project or None

    def compose_cmd(self, *args: str) -> List[str]:
        cmd = ["docker", "compose", "--project-directory", str(self.config.repo_dir), "-f", str(self.compose_file)]
        if self.project:
            cmd += ["--project-name", self.project]
        return cmd + list(args)

    def compose_up(self, service: str) -> None:
        run_command(self.compose_cmd("up", "-d", "--build", "--no-deps", service), timeout=self.config.build_timeout)

    def compose_ps(self) -> str:
        return run_command(self.compose_cmd("ps"), timeout=self.timeout, check=False).stdout

    def compose_container_id(self, service: str) -> Optional[str]:
        result = run_command(self.compose_cmd("ps", "-q", service), timeout=self.timeout, check=False)
        ids = [line for line in result.stdout.splitlines() if line.strip()]
        return ids[0].strip() if ids else None

    def slot_state(self, slot: Slot) -> SlotState:
        container = self.compose_container_id(slot.service)
        if container is None and self.container_exists(slot.service):
            container = slot.service
        if container is None:
            return SlotState(color=slot.color, health=SlotHealth.absent)

        result = run_command(["docker", "inspect", "--format", "{{json .State}}", container], timeout=self.timeout, check=False)
        if result.returncode != 0:
            return SlotState(color=slot.color, container=container, health=SlotHealth.absent)
        try:
            state = json.loads(result.stdout)
        except ValueError:
            logger.debug(f"Unreadable state for {container}: {result.stdout!r}")
            return SlotState(color=slot.color, container=container)

        return SlotState(
            color=slot.color,
            container=container,
            health=health_from_state(state),
            running=bool(state.get("Running")),
            started_at=parse_started_at(state.get("StartedAt", "")),
        )

    def container_exists(self, name: str) -> bool:
        return command_ok(["docker", "inspect", name], timeout=self.timeout)

    def _inspect(self, name: str, template: str) -> Optional[str]:
        result = run_command(["docker", "inspect", "--format", template, name], timeout=self.timeout, check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def container_status(self, name: str) -> Optional[str]:
        return self._inspect(name, "{{.State.Status}}")

    def container_image(self, name: str) -> Optional[str]:
        return self._inspect(name, "{{.Config.Image}}") or None

    def running_containers(self) -> List[ContainerRow]:
        result = run_command(
            ["docker", "ps", "--format", "{{.Names}}\t{{.Image}}\t{{.Ports}}"], timeout=self.timeout, check=False
        )
        rows = []
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) == 3:
                rows.append((parts[0], parts[1], parts[2]))
        return rows

    def mount_source(self, container: str, destination: str) -> Optional[str]:
        template = "{{range .Mounts}}{{if eq .Destination \"%s\"}}{{.Source}}{{end}}{{end}}" % destination
        return self._inspect(container, template) or None

    def networks(self, container: str) -> List[str]:
        out = self._inspect(container, "{{range $k,$v := .NetworkSettings.Networks}}{{println $k}}{{end}}") or ""
        return [line.strip() for line in out.splitlines() if line.strip()]

    def connect_network(self, network: str, container: str) -> bool:
        return command_ok(["docker", "network", "connect", network, container], timeout=self.timeout)

    def exec_ok(self, container: str, args: List[str]) -> bool:
        return command_ok(["docker", "exec", container, *args], timeout=self.timeout)

    def copy_into(self, source: Path, container: str, destination: str) -> None:
        run_command(["docker", "cp", str(source), f"{container}:{destination}"], timeout=self.timeout)

    def restart(self, container: str) -> None:
        run_command(["docker", "restart", container], timeout=self.timeout)

    def run_probe(self, network: str, image: str, url: str, max_time: int = 3) -> bool:
        return command_ok(
            ["docker", "run", "--rm", "--network", network, image, "-fsS", "--max-time", str(max_time), url],
            timeout=self.timeout,
        )

    def validate_file(self, image: str, source: Path, destination: str) -> bool:
        """Validate a standalone config file with a throwaway edge container"""
        return command_ok(
            [
                "docker", "run", "--rm", "-v", f"{source}:{destination}:ro", image,
                "caddy", "validate", "--config", destination, "--adapter", "caddyfile",
            ],
            timeout=self.timeout,
        )


class LocalHost:
    """HostRuntime backed by ss and systemctl"""

    def __init__(self, timeout: int = 30):
        self.timeout = timeout

    def port_listeners(self, port: int) -> List[str]:
        """Listening socket lines (with owning process) for a TCP port"""
        try:
            result = run_command(["ss", "-ltnp"], timeout=self.timeout, check=False)
        except CommandError as e:
            logger.debug(str(e))
            return []
        pattern = re.compile(rf":{port}\s")
        return [line for line in result.stdout.splitlines() if pattern.search(line)]

    def unit_state(self, unit: str) -> str:
        try:
            result = run_command(["systemctl", "is-active", unit], timeout=self.timeout, check=False)
        except CommandError:
            return "inactive"
        return result.stdout.strip() or "inactive"

    def run_ok(self, args: List[str]) -> bool:
        return command_ok(args, timeout=self.timeout)
