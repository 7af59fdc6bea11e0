"""
Health prober

Bounded HTTP and container checks against a slot and the public endpoint.
Every network call carries a (connect, read) timeout and every loop goes
through lib.utils.retry, so no check can hang a run.
"""

import logging
import math
import time
from typing import Callable, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

import requests
import urllib3
from requests.adapters import HTTPAdapter

from lib.models import Color, ProbeResult, Slot, SlotHealth, SwitchConfig
from lib.runtime import ContainerRuntime
from lib.utils import RetryAborted, retry

logger = logging.getLogger(__name__)


class PinnedHostAdapter(HTTPAdapter):
    """Send requests for ``hostname`` to ``address`` (like curl --resolve).

    The URL host is swapped for the address while the Host header and TLS SNI
    keep the real name, so the edge serves the domain's site and certificate.
    """

    def __init__(self, hostname: str, address: str, **kwargs):
        self.hostname = hostname
        self.address = address
        super().__init__(**kwargs)

    def send(self, request, **kwargs):
        parts = urlsplit(request.url)
        if parts.hostname == self.hostname:
            netloc = self.address if parts.port is None else f"{self.address}:{parts.port}"
            request.url = urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))
            request.headers["Host"] = parts.netloc
            if parts.scheme == "https":
                self.poolmanager.connection_pool_kw["server_hostname"] = self.hostname
        return super().send(request, **kwargs)


def build_session(config: SwitchConfig) -> requests.Session:
    session = requests.Session()
    session.verify = config.verify_tls
    if not config.verify_tls:
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    if config.resolve_address:
        hostname = urlsplit(config.public_check_url).hostname or config.domain
        for scheme in ("https://", "http://"):
            session.mount(f"{scheme}{hostname}", PinnedHostAdapter(hostname, config.resolve_address))
    return session


class HealthChecker:
    """Read-only probes; safe to retry at will"""

    def __init__(
        self,
        config: SwitchConfig,
        runtime: ContainerRuntime,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.runtime = runtime
        self.session = session or build_session(config)
        self.sleep = sleep
        self.clock = clock
        self.timeout = (config.connect_timeout, config.http_timeout)

    def _probe(self, method: str, url: str, timeout=None, **kwargs) -> ProbeResult:
        try:
            response = self.session.request(method, url, timeout=timeout or self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.debug(f"{method} {url} failed: {e}")
            return ProbeResult(url=url, error=str(e))

        headers: Dict[str, str] = dict(response.headers)
        slot = response.headers.get(self.config.slot_header)
        return ProbeResult(
            url=url,
            status_code=response.status_code,
            slot=slot.strip().lower() if slot else None,
            headers=headers,
            body=response.text if method == "GET" else "",
        )

    def http_ok(self, url: str, timeout: float = 2.0) -> bool:
        return self._probe("GET", url, timeout=(timeout, timeout)).ok

    def local_check(self, slot: Slot) -> bool:
        """Direct check of the slot's published loopback port"""
        return self.http_ok(f"http://127.0.0.1:{slot.port}/", timeout=4.0)

    def _internal_check(self, slot: Slot, container: str) -> bool:
        networks = self.runtime.networks(container)
        if not networks:
            return False
        url = f"http://{slot.service}:{slot.service_port}/"
        return self.runtime.run_probe(networks[0], self.config.upstream_probe_image, url, 2)

    def wait_healthy(self, slot: Slot, timeout: Optional[float] = None) -> bool:
        """Block until the slot is ready, it turns unhealthy, or ``timeout`` seconds of wall time pass.

        Ready means a healthy container, or a running container without a
        healthcheck that answers HTTP (loopback port first, then over its own
        network). Never raises.
        """
        timeout = self.config.ready_timeout if timeout is None else timeout
        interval = self.config.ready_interval
        deadline = self.clock() + timeout
        attempts = max(1, math.ceil(timeout / interval) + 1) if interval > 0 else 1

        def ready() -> bool:
            try:
                state = self.runtime.slot_state(slot)
            except Exception as e:  # probing must not break the wait loop
                logger.debug(f"State probe for {slot.service} failed: {e}")
                return False
            if state.health == SlotHealth.healthy:
                return True
            if state.health == SlotHealth.unhealthy:
                raise RetryAborted(f"{slot.service} is unhealthy")
            if state.running and state.health == SlotHealth.running:
                if self.local_check(slot):
                    return True
                return state.container is not None and self._internal_check(slot, state.container)
            return False

        logger.info(f"Waiting up to {timeout:g}s for {slot.service} ({slot.color.value}) to become ready")
        if retry(ready, attempts=attempts, interval=interval, sleep=self.sleep, deadline=deadline, clock=self.clock):
            logger.info(f"{slot.service} is ready")
            return True
        logger.error(f"{slot.service} did not become ready")
        return False

    def public_check(
        self,
        expected: Optional[Color],
        url: Optional[str] = None,
        retries: Optional[int] = None,
        interval: Optional[float] = None,
    ) -> ProbeResult:
        """Poll the public endpoint until it serves ``expected`` (or any slot when the header is absent).

        Returns the last observed result; ``ok`` on it only reflects the status
        code, use ``passes`` for the full verdict.
        """
        url = url or self.config.public_check_url
        retries = self.config.public_check_retries if retries is None else retries
        interval = self.config.public_check_interval if interval is None else interval
        last: Dict[str, ProbeResult] = {}

        def attempt() -> bool:
            result = self._probe("HEAD", url, allow_redirects=True)
            last["result"] = result
            return self.passes(result, expected)

        retry(attempt, attempts=retries, interval=interval, sleep=self.sleep)
        return last.get("result") or ProbeResult(url=url, error="no attempt made")

    @staticmethod
    def passes(result: ProbeResult, expected: Optional[Color]) -> bool:
        if not result.ok:
            return False
        return result.slot is None or expected is None or result.slot == expected.value

    def current_slot(self) -> Optional[Color]:
        """Slot the public endpoint says it is served by, right now (single attempt)"""
        result = self._probe("HEAD", self.config.public_check_url, allow_redirects=True)
        if result.slot in (Color.blue.value, Color.green.value):
            return Color(result.slot)
        return None

    def network_reachable(self, slot: Slot, edge_container: str) -> bool:
        """Can the edge reach the slot by service name over a network they share?"""
        state = self.runtime.slot_state(slot)
        if state.container is None:
            logger.error(f"No container found for {slot.service}")
            return False
        url = f"http://{slot.service}:{slot.service_port}/"

        def reachable() -> bool:
            edge_networks = set(self.runtime.networks(edge_container))
            for network in self.runtime.networks(state.container):
                if network not in edge_networks:
                    continue
                if self.runtime.run_probe(network, self.config.upstream_probe_image, url, 3):
                    logger.debug(f"{url} reachable on network {network}")
                    return True
            return False

        return bool(
            retry(
                reachable,
                attempts=self.config.upstream_probe_retries,
                interval=self.config.upstream_probe_interval,
                sleep=self.sleep,
            )
        )

    def edge_probe(self) -> ProbeResult:
        """GET the reserved probe path on the public domain"""
        base = self.config.public_check_url.rstrip("/")
        return self._probe("GET", f"{base}{self.config.probe_path}")

    def health_headers(self) -> ProbeResult:
        base = self.config.public_check_url.rstrip("/")
        return self._probe("HEAD", f"{base}{self.config.health_path}")
