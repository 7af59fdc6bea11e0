"""
Slot selection

Works out which slot is live from several partial signals. Called once per
run; the answer is passed along explicitly instead of being re-derived.
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from lib.caddyfile import Caddyfile
from lib.edge_config import read_config
from lib.models import Color, SlotHealth, SlotSelection, SlotState, SwitchConfig, SwitchMode
from lib.runtime import ContainerRuntime
from lib.state import read_marker

logger = logging.getLogger(__name__)


def newest_healthy(states: Iterable[SlotState]) -> Optional[Color]:
    """Most recently started healthy slot"""
    best: Optional[SlotState] = None
    for state in states:
        if state.health != SlotHealth.healthy or state.started_at is None:
            continue
        if best is None or state.started_at > best.started_at:
            best = state
    return best.color if best else None


def color_from_config(config: SwitchConfig, files: Iterable[Optional[Path]]) -> Optional[Color]:
    """First file (that exists) whose route table names a slot"""
    for path in files:
        if path is None or not path.is_file():
            continue
        table = Caddyfile.parse(read_config(path), config.domain, slot_header=config.slot_header)
        color = table.active_color(config.slots)
        if color is not None:
            logger.debug(f"{path} routes {config.domain} to {color.value}")
            return color
    return None


def resolve_active_slot(
    config: SwitchConfig,
    runtime: ContainerRuntime,
    probe_slot: Optional[Color],
    config_files: List[Optional[Path]],
    override: Optional[Color] = None,
) -> SlotSelection:
    """Decide the active slot; the idle slot is its complement.

    Priority, first conclusive signal wins:
        1. public probe slot header
        2. active marker, if that slot's container is healthy or running
        3. route block in the edge config (target file, then local copy)
        4. newest healthy container by start time
        5. configured default

    ``override`` names the slot to deploy into, which makes its complement active.
    """
    if override is not None:
        return SlotSelection(active=override.other, source="override")

    if probe_slot is not None:
        return SlotSelection(active=probe_slot, source="probe")

    states: Dict[Color, SlotState] = {}

    def state(color: Color) -> SlotState:
        if color not in states:
            states[color] = runtime.slot_state(config.slot(color))
        return states[color]

    marker = read_marker(config.marker_path)
    if marker is not None:
        if state(marker).serving:
            return SlotSelection(active=marker, source="marker")
        logger.warning(f"Active marker names {marker.value} but its container is {state(marker).health.value}")

    from_config = color_from_config(config, config_files)
    if from_config is not None:
        return SlotSelection(active=from_config, source="config")

    newest = newest_healthy(state(c) for c in Color)
    if newest is not None:
        return SlotSelection(active=newest, source="newest-healthy")

    return SlotSelection(active=config.default_slot, source="default")


def pick_pin_slot(config: SwitchConfig, runtime: ContainerRuntime) -> SlotSelection:
    """Slot to pin the route to when repairing the edge without deploying.

    Prefers the freshest healthy slot, then a marker naming a serving slot,
    then any serving slot, then the default.
    """
    states = [runtime.slot_state(slot) for slot in config.slots]

    newest = newest_healthy(states)
    if newest is not None:
        return SlotSelection(active=newest, source="newest-healthy")

    marker = read_marker(config.marker_path)
    by_color = {s.color: s for s in states}
    if marker is not None and by_color[marker].serving:
        return SlotSelection(active=marker, source="marker")

    for s in states:
        if s.serving:
            return SlotSelection(active=s.color, source="running")

    return SlotSelection(active=config.default_slot, source="default")


def resolve_switch_mode(config: SwitchConfig, files: Iterable[Optional[Path]], docker_edge: bool) -> SwitchMode:
    """Addressing mode to write: keep what the config uses, else default by edge owner.

    A host edge cannot resolve container names, so it always gets port mode.
    """
    mode = SwitchMode.unknown
    for path in files:
        if path is None or not path.is_file():
            continue
        mode = Caddyfile.parse(read_config(path), config.domain, slot_header=config.slot_header).switch_mode(
            config.slots
        )
        if mode != SwitchMode.unknown:
            break

    if mode == SwitchMode.unknown:
        mode = SwitchMode.service if docker_edge else SwitchMode.port

    if not docker_edge and mode == SwitchMode.service:
        logger.warning("Host edge with service-name upstreams detected; forcing port mode")
        mode = SwitchMode.port
    return mode
