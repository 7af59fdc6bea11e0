from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from jinja2 import Template
from pydantic import BaseModel, Field, model_validator

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "tpl"


class Color(str, Enum):
    """Slot color enum"""

    blue = "blue"
    green = "green"

    @property
    def other(self) -> "Color":
        """The complementary slot"""
        return Color.green if self is Color.blue else Color.blue


class SwitchMode(str, Enum):
    """How the edge addresses a slot"""

    service = "service"
    """Container DNS name on a shared docker network, e.g. bookhive-green:8080"""
    port = "port"
    """Published loopback port on the host, e.g. 127.0.0.1:18082"""
    unknown = "unknown"
    """Detection result only, never used to build an upstream"""


class SlotHealth(str, Enum):
    """Container health as reported by the runtime"""

    healthy = "healthy"
    running = "running"
    unhealthy = "unhealthy"
    absent = "absent"
    unknown = "unknown"


class EdgeOwner(str, Enum):
    """Who owns the public port"""

    docker = "docker"
    host = "host"


class EdgeMode(str, Enum):
    """Where the editable edge config lives"""

    container_mounted = "container-mounted"
    """Caddyfile is bind-mounted from the host; edit the host file in place"""
    container_internal = "container-internal"
    """Caddyfile only exists inside the container; edit a local copy and docker cp it"""
    host = "host"
    """Caddy runs as a systemd unit on the host"""


class Slot(BaseModel):
    """One of the two parallel backend deployments"""

    color: Color
    """Slot identity"""
    service: str
    """The compose service (and container DNS name) backing the slot"""
    port: int
    """Host port the slot publishes on the loopback interface"""
    service_port: int = 8080
    """Port the service listens on inside its network"""

    def upstream(self, mode: SwitchMode) -> str:
        """Upstream address in host:port form for the given addressing mode"""
        if mode == SwitchMode.service:
            return f"{self.service}:{self.service_port}"
        if mode == SwitchMode.port:
            return f"127.0.0.1:{self.port}"
        raise ValueError(f"Cannot build an upstream for switch mode '{mode.value}'")


class SlotState(BaseModel):
    """Runtime view of a slot's backing container"""

    color: Color
    container: Optional[str] = None
    """Container id or name, None when the service has no container"""
    health: SlotHealth = SlotHealth.unknown
    running: bool = False
    started_at: Optional[datetime] = None

    @property
    def serving(self) -> bool:
        """Healthy, or running without a healthcheck"""
        return self.health in (SlotHealth.healthy, SlotHealth.running)


class RouteBlock(BaseModel):
    """The edge config unit mapping one domain to one slot upstream"""

    domain: str
    """Site address, without scheme or port"""
    upstream: Optional[str] = None
    """host:port the block proxies to"""
    color: Optional[Color] = None
    """Slot named by the slot header directive, if any"""
    probe_path: str = "/__edge_probe"
    """Reserved path answering with a plain-text identification of the upstream"""
    probe_label: Optional[str] = None
    """Label used in the probe response, defaults to the domain"""
    slot_header: str = "X-Edge-Slot"
    """Response header naming the slot that answered"""
    backend_header: str = "X-Edge-Backend"
    """Response header naming the upstream that answered"""
    lines: List[str] = Field(default_factory=list)
    """Raw lines when the block was parsed from a file"""

    def probe_body(self) -> str:
        return f"{self.probe_label or self.domain} -> {self.upstream}"

    def render(self) -> str:
        """Canonical block text from tpl/caddy/route_block.j2, newline terminated"""
        with open(TEMPLATE_DIR / "caddy" / "route_block.j2", encoding="utf-8") as f:
            template_content = f.read()

        template = Template(template_content, trim_blocks=True, keep_trailing_newline=True)
        return template.render(block=self, probe_body=self.probe_body())


class ProbeResult(BaseModel):
    """Outcome of a single HTTP probe"""

    url: str
    status_code: Optional[int] = None
    """None when no response was received at all"""
    slot: Optional[str] = None
    """Lower-cased value of the slot header, if present"""
    headers: Dict[str, str] = Field(default_factory=dict)
    body: str = ""
    error: Optional[str] = None
    checked_at: datetime = Field(default_factory=datetime.now)

    @property
    def ok(self) -> bool:
        """2xx or 3xx"""
        return self.status_code is not None and 200 <= self.status_code < 400

    def describe_headers(self) -> str:
        lines = [f"HTTP {self.status_code if self.status_code is not None else 'n/a'}"]
        lines += [f"{k}: {v}" for k, v in self.headers.items()]
        return "\n".join(lines)


class EdgeRuntime(BaseModel):
    """Detected edge proxy and the single config file a run edits"""

    owner: EdgeOwner
    mode: EdgeMode
    container: Optional[str] = None
    """Edge container name (docker owner only)"""
    image: Optional[str] = None
    runtime_file: Optional[Path] = None
    """Host path of the config the running edge reads, when editable"""
    target_file: Path
    """The file this run rewrites"""


class SlotSelection(BaseModel):
    """Active/idle decision for one run"""

    active: Color
    source: str
    """Which signal decided: override, probe, marker, config, newest-healthy, default"""

    @property
    def idle(self) -> Color:
        return self.active.other


class SwitchReport(BaseModel):
    """Result of a switch run, printed as the verification summary"""

    active: Color
    """Slot that is live after the run"""
    previous: Color
    edge_mode: Optional[EdgeMode] = None
    switch_mode: Optional[SwitchMode] = None
    local_ok: bool = False
    config_ok: bool = False
    public_ok: bool = False
    public: Optional[ProbeResult] = None
    remedied: bool = False
    rolled_back: bool = False
    diagnostics: List[str] = Field(default_factory=list)
    """Follow-up commands when a check did not pass"""

    @property
    def verified(self) -> bool:
        return self.local_ok and self.public_ok


class SwitchConfig(BaseModel):
    """edgeswitch settings (edgeswitch.yml, overridable with EDGESWITCH_<FIELD> env vars)"""

    repo_dir: Path = Path(".")
    """Directory holding the compose file (and the git checkout when git_sync is on)"""
    compose_file: Path = Path("docker-compose.yml")
    """Compose file defining both slot services, relative to repo_dir"""
    compose_project: Optional[str] = None
    """Compose project name, adopted from existing slot containers when omitted"""

    domain: str
    """Public domain whose route block is switched"""
    public_check_url: Optional[str] = None
    """Defaults to https://<domain>"""
    probe_path: str = "/__edge_probe"
    health_path: str = "/health"
    probe_label: Optional[str] = None
    slot_header: str = "X-Edge-Slot"
    backend_header: str = "X-Edge-Backend"
    resolve_address: Optional[str] = "127.0.0.1"
    """Pin the public domain to this address when probing (curl --resolve style)"""
    verify_tls: bool = False

    blue_service: str = "app-blue"
    green_service: str = "app-green"
    blue_port: int = 18081
    green_port: int = 18082
    service_port: int = 8080
    default_slot: Color = Color.blue

    edge_container: Optional[str] = None
    """Preferred edge container name"""
    edge_config_path: Path = Path("/etc/caddy/Caddyfile")
    """Config path inside the edge container"""
    host_config_path: Path = Path("/etc/caddy/Caddyfile")
    """Config path of a systemd-managed edge"""
    local_config_file: Path = Path("infra/Caddyfile")
    """Local copy edited when the edge config is not bind-mounted, relative to repo_dir"""
    edge_service_unit: str = "caddy"
    public_port: int = 443

    marker_path: Path = Path("/var/lib/edgeswitch/active")
    lock_file: Path = Path("/tmp/edgeswitch.lock")
    log_file: Optional[Path] = None

    block_position: str = "prepend"
    """Where the canonical route block goes: prepend or append"""
    follow_upstream: bool = True
    """Also retarget reverse_proxy lines elsewhere in the file that name the old upstream"""

    ready_timeout: int = 240
    ready_interval: float = 2.0
    public_check_retries: int = 30
    public_check_interval: float = 2.0
    upstream_probe_image: str = "curlimages/curl:8.11.1"
    upstream_probe_retries: int = 8
    upstream_probe_interval: float = 2.0
    http_timeout: float = 12.0
    connect_timeout: float = 5.0
    command_timeout: int = 120
    build_timeout: int = 1800
    edge_running_timeout: int = 40

    auto_remedy_502: bool = True
    auto_rollback: bool = False
    restart_on_reload_fail: bool = True
    enable_fmt: bool = False

    git_sync: bool = False
    git_remote: str = "origin"
    git_branch: str = "main"
    external_env_file: Optional[Path] = None
    """Key/value file merged into <repo_dir>/.env before bring-up"""
    required_env_keys: List[str] = []
    loopback_alias: Optional[str] = "host.docker.internal"
    """Replaces localhost/127.0.0.1 in DATABASE_URL after merging the external env"""

    @model_validator(mode="after")
    def check_settings(self) -> "SwitchConfig":
        if self.block_position not in ("prepend", "append"):
            raise ValueError("block_position must be 'prepend' or 'append'")
        if self.blue_service == self.green_service:
            raise ValueError("blue_service and green_service must differ")
        if self.blue_port == self.green_port:
            raise ValueError("blue_port and green_port must differ")
        if not self.public_check_url:
            self.public_check_url = f"https://{self.domain}"
        return self

    def slot(self, color: Color) -> Slot:
        if color == Color.blue:
            return Slot(color=color, service=self.blue_service, port=self.blue_port, service_port=self.service_port)
        return Slot(color=color, service=self.green_service, port=self.green_port, service_port=self.service_port)

    @property
    def slots(self) -> List[Slot]:
        return [self.slot(Color.blue), self.slot(Color.green)]

    def route_block(self, color: Color, mode: SwitchMode) -> RouteBlock:
        """Canonical route block sending the domain to the given slot"""
        return RouteBlock(
            domain=self.domain,
            upstream=self.slot(color).upstream(mode),
            color=color,
            probe_path=self.probe_path,
            probe_label=self.probe_label,
            slot_header=self.slot_header,
            backend_header=self.backend_header,
        )

    def repo_path(self, path: Path) -> Path:
        """Resolve a repo-relative path"""
        return path if path.is_absolute() else self.repo_dir / path
