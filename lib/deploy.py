"""
Blue/green switch coordinator

Brings up the idle slot, waits for it, repoints the edge route block at it,
verifies locally and over the public path, and rolls back when asked to.

Process (``deploy``):
1. Lock, optional repo sync and env merge
2. Detect the edge and the one config file this run edits
3. Resolve active/idle slots (once; threaded through the rest of the run)
4. Bring up the idle slot only and wait for it (hard upper bound)
5. Service mode: make sure the edge can reach the idle slot by name
6. Rewrite the route block in place, validate, reload (restart fallback)
7. Verify: local slot, edge config, public endpoint (one auto-remedy for 502)
8. Rollback on failure when enabled
9. Persist the active marker only after the final decision

Nothing before step 6 touches traffic; a failure there leaves the edge
config byte-for-byte unchanged.
"""

import logging
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from lib.caddyfile import Caddyfile, upstream_forms
from lib.data import merge_external_env
from lib.edge import ProxyController, detect_edge, proxy_for, reload_edge
from lib.edge_config import apply_route, list_backups, read_config, restore_backup
from lib.errors import ReachabilityError, ReadinessError, ReloadError, SwitchError, VerificationError
from lib.git import sync_repo
from lib.health import HealthChecker
from lib.models import (
    Color,
    EdgeOwner,
    EdgeRuntime,
    Slot,
    SlotSelection,
    SwitchConfig,
    SwitchMode,
    SwitchReport,
)
from lib.runtime import ContainerRuntime, HostRuntime
from lib.slots import color_from_config, pick_pin_slot, resolve_active_slot, resolve_switch_mode
from lib.state import deployment_lock, write_marker
from lib.utils import retry

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    """Switch state machine phases"""

    idle = "idle"
    detect_edge = "detect-edge"
    select_slots = "select-slots"
    bring_up_idle = "bring-up-idle"
    wait_idle_healthy = "wait-idle-healthy"
    ensure_network = "ensure-network"
    rewrite_config = "rewrite-config"
    reload_edge = "reload-edge"
    verify = "verify"
    auto_remedy = "auto-remedy"
    rollback = "rollback"
    persist_marker = "persist-marker"
    done = "done"
    failed = "failed"


class SwitchCoordinator:
    """Runs one blue/green switch against injected runtime, host and health interfaces"""

    def __init__(
        self,
        config: SwitchConfig,
        runtime: ContainerRuntime,
        host: HostRuntime,
        health: Optional[HealthChecker] = None,
        edge_container: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.runtime = runtime
        self.host = host
        self.sleep = sleep
        self.health = health or HealthChecker(config, runtime, sleep=sleep)
        self.edge_container = edge_container
        self.phase = Phase.idle
        self.history: List[Phase] = [Phase.idle]

    def _enter(self, phase: Phase) -> None:
        self.phase = phase
        self.history.append(phase)
        logger.debug(f"Phase: {phase.value}")

    # Building blocks

    def prepare(self) -> None:
        """Optional pre-deploy steps: fast-forward the repo, merge the external env"""
        if self.config.git_sync:
            logger.info("Syncing repository (fast-forward only)")
            sync_repo(
                self.config.repo_dir,
                self.config.git_remote,
                self.config.git_branch,
                timeout=self.config.command_timeout,
            )
        if self.config.external_env_file:
            merge_external_env(
                self.config.repo_dir / ".env",
                self.config.external_env_file,
                required_keys=self.config.required_env_keys,
                loopback_alias=self.config.loopback_alias,
            )

    def detect(self) -> EdgeRuntime:
        self._enter(Phase.detect_edge)
        edge = detect_edge(self.config, self.runtime, self.host, self.edge_container)
        logger.info(f"Edge owner: {edge.owner.value}, mode: {edge.mode.value}")
        if edge.container:
            logger.info(f"Edge container: {edge.container}")
        logger.info(f"Edge config (single file edited by this run): {edge.target_file}")
        return edge

    def config_files(self, edge: EdgeRuntime) -> List[Optional[Path]]:
        local = self.config.repo_path(self.config.local_config_file)
        return [edge.target_file] if local == edge.target_file else [edge.target_file, local]

    def select(self, edge: EdgeRuntime, override: Optional[Color] = None) -> SlotSelection:
        self._enter(Phase.select_slots)
        probe_slot = None if override else self.health.current_slot()
        selection = resolve_active_slot(
            self.config, self.runtime, probe_slot, self.config_files(edge), override=override
        )
        active, idle = self.config.slot(selection.active), self.config.slot(selection.idle)
        logger.info(f"Active slot: {active.color.value} ({active.service}:{active.port}) [{selection.source}]")
        logger.info(f"Deploy slot: {idle.color.value} ({idle.service}:{idle.port})")
        return selection

    def connect_edge_networks(self, slot: Slot, edge_container: str) -> None:
        """Join the edge container to every network of the slot's container"""
        state = self.runtime.slot_state(slot)
        if state.container is None:
            raise ReachabilityError(
                f"Cannot find a container for {slot.service}",
                diagnostics=[f"docker compose -f '{self.config.repo_path(self.config.compose_file)}' ps"],
            )
        joined = set(self.runtime.networks(edge_container))
        for network in self.runtime.networks(state.container):
            if network not in joined:
                logger.info(f"Connecting edge container '{edge_container}' to network '{network}'")
                self.runtime.connect_network(network, edge_container)

    def ensure_reachable(self, edge: EdgeRuntime, slot: Slot) -> None:
        """Service mode only: the edge must reach the slot by name before traffic moves"""
        self._enter(Phase.ensure_network)
        if edge.owner != EdgeOwner.docker or not edge.container:
            raise ReachabilityError("Service-name upstreams need a containerised edge, but none was detected")

        for attempt in (1, 2):
            self.connect_edge_networks(slot, edge.container)
            if self.health.network_reachable(slot, edge.container):
                logger.info(f"Edge can reach http://{slot.service}:{slot.service_port}")
                return
            if attempt == 1:
                logger.warning("Edge cannot reach the idle slot yet; reconnecting networks once more")

        compose = self.config.repo_path(self.config.compose_file)
        raise ReachabilityError(
            f"Edge cannot reach http://{slot.service}:{slot.service_port} over a shared network; "
            "aborting before traffic switch",
            diagnostics=[
                f"docker inspect '{edge.container}' --format '{{{{json .NetworkSettings.Networks}}}}' | jq",
                f"docker compose -f '{compose}' ps",
                f"docker inspect $(docker compose -f '{compose}' ps -q '{slot.service}') "
                "--format '{{json .NetworkSettings.Networks}}' | jq",
            ],
        )

    def switch_route(
        self, edge: EdgeRuntime, proxy: ProxyController, to_color: Color, from_color: Color, mode: SwitchMode
    ) -> None:
        """Rewrite the route block to ``to_color`` and reload the edge.

        Raises:
            ReloadError: validation failed (original restored), or reload and
                restart both failed (original restored and reloaded best-effort)
            SwitchError: any other failure once the file was rewritten, after
                the original was restored
        """
        self._enter(Phase.rewrite_config)
        block = self.config.route_block(to_color, mode)
        retarget = upstream_forms(self.config.slot(from_color))[mode] if self.config.follow_upstream else None
        backup = apply_route(
            edge.target_file,
            block,
            proxy.validate,
            position=self.config.block_position,
            retarget_from=retarget,
            on_restore=proxy.publish,
        )

        self._enter(Phase.reload_edge)
        try:
            reloaded = reload_edge(proxy, self.config.restart_on_reload_fail)
        except Exception:
            self.restore_route(edge, proxy, backup)
            raise
        if reloaded:
            logger.info(f"Traffic switched to {to_color.value} slot")
            return

        self.restore_route(edge, proxy, backup)
        raise ReloadError(
            f"Could not reload the edge; {edge.target_file} restored from {backup}",
            diagnostics=proxy.diagnostics() + [f"ls -lt '{edge.target_file}'.bak.*"],
        )

    def restore_route(self, edge: EdgeRuntime, proxy: ProxyController, backup: Path) -> None:
        """Put the pre-switch config back and try to get the edge serving it again"""
        restore_backup(backup, edge.target_file)
        try:
            if proxy.validate(edge.target_file):
                proxy.reload()
        except SwitchError as e:
            logger.error(f"Restored {edge.target_file} but could not reload the edge with it: {e}")

    def verify(self, edge: EdgeRuntime, slot: Slot, mode: SwitchMode, report: SwitchReport) -> SwitchReport:
        self._enter(Phase.verify)
        report.local_ok = self.health.local_check(slot)
        table = Caddyfile.parse(read_config(edge.target_file), self.config.domain, slot_header=self.config.slot_header)
        report.config_ok = table.points_to(slot.upstream(mode))
        report.public = self.health.public_check(expected=slot.color)
        report.public_ok = self.health.passes(report.public, slot.color)
        return report

    def auto_remedy(self, edge: EdgeRuntime, proxy: ProxyController, slot: Slot, report: SwitchReport) -> SwitchReport:
        """One bounded recovery for a 502: reconnect networks, re-probe, reload, re-check"""
        self._enter(Phase.auto_remedy)
        logger.warning("Public check returned 502; reconnecting edge to the slot network(s) and re-checking")
        report.remedied = True
        try:
            self.connect_edge_networks(slot, edge.container)
        except ReachabilityError as e:
            logger.error(str(e))
            return report
        if not self.health.network_reachable(slot, edge.container):
            logger.error(f"Auto-remedy probe failed: {slot.service}:{slot.service_port} still unreachable from the edge")
            return report
        if not reload_edge(proxy, restart_fallback=False):
            logger.error("Auto-remedy reload failed; re-checking the public endpoint anyway")
        self._enter(Phase.verify)
        report.public = self.health.public_check(expected=slot.color)
        report.public_ok = self.health.passes(report.public, slot.color)
        return report

    def verification_diagnostics(self, edge: EdgeRuntime, slot: Slot) -> List[str]:
        lines = [
            f"curl -sS -o /dev/null -w 'idle slot HTTP %{{http_code}}\\n' http://127.0.0.1:{slot.port}/",
            f"curl -ksSI '{self.config.public_check_url}' | sed -n '1,30p'",
        ]
        if edge.container:
            lines.append(f"docker logs --tail=120 '{edge.container}'")
        return lines

    # Operations

    def deploy(self, override: Optional[Color] = None) -> SwitchReport:
        """Run a full switch under the deployment lock.

        Raises:
            SwitchError: any fatal condition; VerificationError also when the
                switch was rolled back
        """
        with deployment_lock(self.config.lock_file):
            try:
                return self._deploy(override)
            except SwitchError:
                self._enter(Phase.failed)
                raise

    def _deploy(self, override: Optional[Color]) -> SwitchReport:
        self.prepare()
        edge = self.detect()
        proxy = proxy_for(self.config, edge, self.runtime, self.host, sleep=self.sleep)
        selection = self.select(edge, override)
        active, idle = self.config.slot(selection.active), self.config.slot(selection.idle)
        compose = self.config.repo_path(self.config.compose_file)

        self._enter(Phase.bring_up_idle)
        logger.info(f"Building and starting idle slot {idle.service} only")
        self.runtime.compose_up(idle.service)

        self._enter(Phase.wait_idle_healthy)
        if not self.health.wait_healthy(idle, self.config.ready_timeout):
            raise ReadinessError(
                f"{idle.service} did not become ready within {self.config.ready_timeout}s; traffic left on "
                f"{active.color.value}",
                diagnostics=[
                    f"docker compose -f '{compose}' ps",
                    f"docker compose -f '{compose}' logs --tail=120 '{idle.service}'",
                    f"docker inspect $(docker compose -f '{compose}' ps -q '{idle.service}') "
                    "--format '{{json .State.Health}}' | jq",
                ],
            )

        mode = resolve_switch_mode(self.config, self.config_files(edge), edge.owner == EdgeOwner.docker)
        logger.info(f"Switch mode: {mode.value}")
        if mode == SwitchMode.service:
            self.ensure_reachable(edge, idle)

        logger.info(f"Switching traffic {active.color.value} -> {idle.color.value} in {edge.target_file}")
        self.switch_route(edge, proxy, idle.color, active.color, mode)

        report = SwitchReport(active=idle.color, previous=active.color, edge_mode=edge.mode, switch_mode=mode)
        self.verify(edge, idle, mode, report)

        if (
            not report.public_ok
            and self.config.auto_remedy_502
            and mode == SwitchMode.service
            and edge.owner == EdgeOwner.docker
            and report.public is not None
            and report.public.status_code == 502
        ):
            self.auto_remedy(edge, proxy, idle, report)

        if report.verified:
            logger.info("Deployment verified: local slot and public endpoint are both healthy")
            self._enter(Phase.persist_marker)
            write_marker(self.config.marker_path, idle.color)
            self._enter(Phase.done)
            return report

        diagnostics = self.verification_diagnostics(edge, idle)
        if not self.config.auto_rollback:
            self._enter(Phase.persist_marker)
            write_marker(self.config.marker_path, idle.color)
            raise VerificationError(
                f"Traffic switched to {idle.color.value} but verification failed (auto rollback disabled)",
                report=report,
                diagnostics=diagnostics,
            )

        self._enter(Phase.rollback)
        logger.error(f"Verification failed; rolling traffic back to {active.color.value}")
        try:
            self.switch_route(edge, proxy, active.color, idle.color, mode)
        except SwitchError as e:
            raise VerificationError(
                f"Verification failed and rollback failed ({e}); manual intervention required",
                report=report,
                diagnostics=diagnostics + e.diagnostics,
            ) from e

        report.rolled_back = True
        report.active, report.previous = active.color, idle.color
        self._enter(Phase.persist_marker)
        write_marker(self.config.marker_path, active.color)
        raise VerificationError(
            f"Rolled back to {active.color.value} due to failed verification",
            rolled_back=True,
            report=report,
            diagnostics=diagnostics,
        )

    def repair_config(self, edge: EdgeRuntime, proxy: ProxyController) -> None:
        """Make sure the edge config validates; otherwise restore the newest valid backup"""
        if proxy.validate(edge.target_file):
            return
        logger.warning(f"{edge.target_file} does not validate; searching backups")
        for backup in list_backups(edge.target_file):
            if proxy.validate_candidate(backup):
                restore_backup(backup, edge.target_file)
                proxy.publish(edge.target_file)
                return
        raise ReloadError(
            f"{edge.target_file} is invalid and no valid backup was found",
            diagnostics=proxy.diagnostics() + [f"ls -lt '{edge.target_file}'.bak.*"],
        )

    def pin(self, color: Optional[Color] = None) -> SwitchReport:
        """Point the route block at a slot without deploying (repair path)"""
        with deployment_lock(self.config.lock_file):
            edge = self.detect()
            proxy = proxy_for(self.config, edge, self.runtime, self.host, sleep=self.sleep)

            self._enter(Phase.select_slots)
            selection = SlotSelection(active=color, source="override") if color else pick_pin_slot(self.config, self.runtime)
            slot = self.config.slot(selection.active)
            mode = resolve_switch_mode(self.config, self.config_files(edge), edge.owner == EdgeOwner.docker)
            logger.info(f"Using color: {slot.color.value} ({slot.upstream(mode)}) [{selection.source}]")

            state = self.runtime.slot_state(slot)
            if not state.serving:
                logger.warning(f"Target slot {slot.service} is {state.health.value}; pinning anyway")

            self.repair_config(edge, proxy)
            previous = color_from_config(self.config, [edge.target_file]) or slot.color.other
            self.switch_route(edge, proxy, slot.color, previous, mode)

            if not proxy.wait_running(self.config.edge_running_timeout):
                raise ReloadError("Edge is not running after reload", diagnostics=proxy.diagnostics())

            self._enter(Phase.persist_marker)
            write_marker(self.config.marker_path, slot.color)

            self._enter(Phase.verify)
            expected = self.config.route_block(slot.color, mode).probe_body()
            last: Dict[str, Any] = {}

            def probe_matches() -> bool:
                last["probe"] = self.health.edge_probe()
                return last["probe"].body.strip() == expected

            matched = bool(
                retry(
                    probe_matches,
                    attempts=self.config.public_check_retries,
                    interval=self.config.public_check_interval,
                    sleep=self.sleep,
                )
            )
            report = SwitchReport(
                active=slot.color,
                previous=previous,
                edge_mode=edge.mode,
                switch_mode=mode,
                local_ok=state.serving,
                config_ok=True,
                public_ok=matched,
                public=last.get("probe"),
            )
            if not matched:
                probe_url = f"{self.config.public_check_url.rstrip('/')}{self.config.probe_path}"
                report.diagnostics = proxy.diagnostics() + [f"curl -ksS '{probe_url}'"]
            self._enter(Phase.done)
            return report

    def status(self) -> Dict[str, Any]:
        """Read-only overview: edge, slot selection, slot states, public probe"""
        edge = self.detect()
        public = self.health.public_check(expected=None, retries=1)
        probe_slot = Color(public.slot) if public.slot in (Color.blue.value, Color.green.value) else None
        selection = resolve_active_slot(self.config, self.runtime, probe_slot, self.config_files(edge))
        return {
            "edge": edge,
            "selection": selection,
            "states": [self.runtime.slot_state(slot) for slot in self.config.slots],
            "public": public,
        }
