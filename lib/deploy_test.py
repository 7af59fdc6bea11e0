import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from lib.caddyfile import Caddyfile
from lib.deploy import Phase, SwitchCoordinator
from lib.edge_config import list_backups
from lib.errors import CommandError, LockError, ReachabilityError, ReadinessError, ReloadError, VerificationError
from lib.models import Color, ProbeResult, SlotHealth, SwitchMode
from lib.state import deployment_lock, read_marker
from lib.test_stubs import DOMAIN, SAMPLE_CADDYFILE, FakeHealth, FakeHost, FakeRuntime, make_config, slot_state

DOCKER_PROXY = 'LISTEN 0 4096 0.0.0.0:443 0.0.0.0:* users:(("docker-proxy",pid=812,fd=4))'


class CoordinatorTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.caddyfile = self.tmp / "edge" / "Caddyfile"
        self.caddyfile.parent.mkdir()
        self.caddyfile.write_text(SAMPLE_CADDYFILE, encoding="utf-8")

        self.runtime = FakeRuntime()
        self.runtime.rows = [("edge-caddy", "caddy:2", "0.0.0.0:80->80/tcp, 0.0.0.0:443->443/tcp")]
        self.runtime.mounts["edge-caddy"] = str(self.caddyfile)
        self.runtime.images["edge-caddy"] = "caddy:2"
        self.runtime.nets = {"edge-caddy": ["edge_net"], "app-green": ["app_default"], "app-blue": ["app_default"]}
        self.host = FakeHost([DOCKER_PROXY])
        self.health = FakeHealth()

    def tearDown(self):
        self._tmp.cleanup()

    def coordinator(self, **settings) -> SwitchCoordinator:
        self.config = make_config(self.tmp, **settings)
        return SwitchCoordinator(self.config, self.runtime, self.host, health=self.health, sleep=Mock())

    def table(self) -> Caddyfile:
        return Caddyfile.parse(self.caddyfile.read_text(encoding="utf-8"), DOMAIN)


class TestDeploy(CoordinatorTestCase):

    def test_switches_to_idle_slot(self) -> None:
        coordinator = self.coordinator()
        inode = self.caddyfile.stat().st_ino

        report = coordinator.deploy()

        self.assertEqual((report.active, report.previous), (Color.green, Color.blue))
        self.assertTrue(report.verified)
        self.assertEqual(self.runtime.started, ["app-green"])
        self.assertTrue(self.table().points_to("app-green:8080"))
        self.assertEqual(self.table().blocks[0].color, Color.green)
        self.assertEqual(self.caddyfile.stat().st_ino, inode)
        self.assertEqual(read_marker(self.config.marker_path), Color.green)
        self.assertEqual(self.runtime.connected, [("app_default", "edge-caddy")])
        self.assertEqual(coordinator.history[-2:], [Phase.persist_marker, Phase.done])

    def test_second_run_switches_back(self) -> None:
        self.coordinator().deploy()
        self.runtime.states[Color.green] = slot_state(Color.green, SlotHealth.healthy, 30)

        report = self.coordinator().deploy()

        self.assertEqual(report.active, Color.blue)
        self.assertEqual(self.runtime.started, ["app-green", "app-blue"])
        self.assertTrue(self.table().points_to("app-blue:8080"))

    def test_probe_decides_active_slot(self) -> None:
        self.health.current = Color.green

        report = self.coordinator().deploy()

        self.assertEqual(report.active, Color.blue)
        self.assertEqual(self.runtime.started, ["app-blue"])

    def test_override_names_deploy_slot(self) -> None:
        report = self.coordinator().deploy(override=Color.blue)

        self.assertEqual(report.active, Color.blue)
        self.assertEqual(self.runtime.started, ["app-blue"])

    def test_readiness_timeout_leaves_config_untouched(self) -> None:
        self.health.ready = False
        coordinator = self.coordinator()

        with self.assertRaises(ReadinessError) as ctx:
            coordinator.deploy()

        self.assertEqual(self.caddyfile.read_text(encoding="utf-8"), SAMPLE_CADDYFILE)
        self.assertEqual(list_backups(self.caddyfile), [])
        self.assertIsNone(read_marker(self.config.marker_path))
        self.assertTrue(any("logs --tail=120" in line for line in ctx.exception.diagnostics))
        self.assertEqual(coordinator.phase, Phase.failed)

    def test_unreachable_slot_aborts_before_switch(self) -> None:
        self.health.reachable = False

        with self.assertRaises(ReachabilityError):
            self.coordinator().deploy()

        self.assertEqual(self.caddyfile.read_text(encoding="utf-8"), SAMPLE_CADDYFILE)
        self.assertIsNone(read_marker(self.config.marker_path))

    def test_rejected_config_is_restored(self) -> None:
        self.runtime.exec_result = False

        with self.assertRaises(ReloadError):
            self.coordinator().deploy()

        self.assertEqual(self.caddyfile.read_text(encoding="utf-8"), SAMPLE_CADDYFILE)
        self.assertIsNone(read_marker(self.config.marker_path))

    def test_internal_edge_gets_original_back_after_rejection(self) -> None:
        del self.runtime.mounts["edge-caddy"]
        local = self.tmp / "infra" / "Caddyfile"
        local.parent.mkdir()
        local.write_text(SAMPLE_CADDYFILE, encoding="utf-8")
        self.runtime.exec_result = False

        with self.assertRaises(ReloadError):
            self.coordinator().deploy()

        self.assertEqual(local.read_text(encoding="utf-8"), SAMPLE_CADDYFILE)
        self.assertEqual(len(self.runtime.pushed), 2)
        self.assertIn("app-green:8080", self.runtime.pushed[0])
        self.assertEqual(self.runtime.pushed[-1], SAMPLE_CADDYFILE)

    def test_reload_and_restart_failure_restores_config(self) -> None:
        self.runtime.exec_ok = lambda container, args: args[1] != "reload"
        self.runtime.restart_error = CommandError("Timed out after 120s: docker restart edge-caddy")

        with self.assertRaises(ReloadError) as ctx:
            self.coordinator().deploy()

        self.assertEqual(self.runtime.restarted, ["edge-caddy"])
        self.assertEqual(self.caddyfile.read_text(encoding="utf-8"), SAMPLE_CADDYFILE)
        self.assertIsNone(read_marker(self.config.marker_path))
        self.assertIn("restored", str(ctx.exception))

    def test_unexpected_reload_error_restores_config(self) -> None:
        coordinator = self.coordinator()
        edge = coordinator.detect()
        proxy = Mock()
        proxy.validate.return_value = True
        proxy.reload.side_effect = CommandError("docker exec failed")

        with self.assertRaises(CommandError):
            coordinator.switch_route(edge, proxy, Color.green, Color.blue, SwitchMode.service)

        self.assertEqual(self.caddyfile.read_text(encoding="utf-8"), SAMPLE_CADDYFILE)

    def test_lock_held(self) -> None:
        coordinator = self.coordinator()

        with deployment_lock(self.config.lock_file):
            with self.assertRaises(LockError):
                coordinator.deploy()

        self.assertEqual(self.runtime.started, [])


class TestVerification(CoordinatorTestCase):

    def failing_public(self, status: int) -> ProbeResult:
        return ProbeResult(url=f"https://{DOMAIN}", status_code=status)

    def test_rollback_restores_previous_slot(self) -> None:
        self.health.public = [self.failing_public(503)]

        with self.assertRaises(VerificationError) as ctx:
            self.coordinator(auto_rollback=True).deploy()

        self.assertTrue(ctx.exception.rolled_back)
        self.assertTrue(ctx.exception.report.rolled_back)
        self.assertTrue(self.table().points_to("app-blue:8080"))
        self.assertEqual(read_marker(self.config.marker_path), Color.blue)

    def test_failed_rollback_needs_manual_intervention(self) -> None:
        self.health.public = [self.failing_public(503)]
        validations = iter([True, False])
        self.runtime.exec_ok = lambda container, args: next(validations) if args[1] == "validate" else True

        with self.assertRaises(VerificationError) as ctx:
            self.coordinator(auto_rollback=True).deploy()

        self.assertIn("manual intervention", str(ctx.exception))
        self.assertFalse(ctx.exception.rolled_back)
        self.assertTrue(self.table().points_to("app-green:8080"))
        self.assertIsNone(read_marker(self.config.marker_path))

    def test_failure_without_rollback(self) -> None:
        self.health.public = [self.failing_public(503)]

        with self.assertRaises(VerificationError) as ctx:
            self.coordinator().deploy()

        self.assertFalse(ctx.exception.rolled_back)
        self.assertTrue(self.table().points_to("app-green:8080"))
        self.assertEqual(read_marker(self.config.marker_path), Color.green)

    def test_local_check_failure(self) -> None:
        self.health.local_ok = False

        with self.assertRaises(VerificationError):
            self.coordinator().deploy()

    def test_auto_remedy_on_502(self) -> None:
        self.health.public = [
            self.failing_public(502),
            ProbeResult(url=f"https://{DOMAIN}", status_code=200, slot="green"),
        ]
        coordinator = self.coordinator()

        report = coordinator.deploy()

        self.assertTrue(report.remedied)
        self.assertTrue(report.verified)
        self.assertEqual(self.health.public_calls, 2)
        self.assertIn(Phase.auto_remedy, coordinator.history)

    def test_auto_remedy_rechecks_after_failed_reload(self) -> None:
        self.health.public = [
            self.failing_public(502),
            ProbeResult(url=f"https://{DOMAIN}", status_code=200, slot="green"),
        ]
        coordinator = self.coordinator()
        reloads = iter([True, False])
        self.runtime.exec_ok = lambda container, args: next(reloads) if args[1] == "reload" else True

        with self.assertLogs("lib.deploy", level="ERROR") as logs:
            report = coordinator.deploy()

        self.assertTrue(report.verified)
        self.assertEqual(self.health.public_calls, 2)
        self.assertTrue(any("Auto-remedy reload failed" in line for line in logs.output))

    def test_no_auto_remedy_when_disabled(self) -> None:
        self.health.public = [self.failing_public(502), ProbeResult(url=f"https://{DOMAIN}", status_code=200)]

        with self.assertRaises(VerificationError):
            self.coordinator(auto_remedy_502=False).deploy()

        self.assertEqual(self.health.public_calls, 1)


class TestPin(CoordinatorTestCase):

    def setUp(self):
        super().setUp()
        self.runtime.states[Color.green] = slot_state(Color.green, SlotHealth.healthy, 30)

    def test_pin_to_slot(self) -> None:
        self.health.probe_body = "app.example.com -> app-green:8080\n"

        report = self.coordinator().pin(Color.green)

        self.assertTrue(report.public_ok)
        self.assertEqual(report.previous, Color.blue)
        self.assertTrue(self.table().points_to("app-green:8080"))
        self.assertEqual(read_marker(self.config.marker_path), Color.green)
        self.assertEqual(self.runtime.started, [])

    def test_pin_auto_prefers_newest_healthy(self) -> None:
        report = self.coordinator().pin()

        self.assertEqual(report.active, Color.green)

    def test_pin_unconfirmed_probe(self) -> None:
        self.health.probe_body = "app.example.com -> app-blue:8080"

        report = self.coordinator().pin(Color.green)

        self.assertFalse(report.public_ok)
        self.assertIn("docker logs --tail=120 'edge-caddy'", report.diagnostics)
        self.assertIn(f"curl -ksS 'https://{DOMAIN}/__edge_probe'", report.diagnostics)

    def test_pin_restores_valid_backup(self) -> None:
        backup = self.caddyfile.with_name("Caddyfile.bak.20261001-000000-000000")
        backup.write_text(SAMPLE_CADDYFILE, encoding="utf-8")
        self.caddyfile.write_text("app.example.com {\n", encoding="utf-8")
        results = iter([False, True, True, True])
        self.runtime.exec_ok = lambda container, args: next(results)

        self.coordinator().pin(Color.green)

        self.assertTrue(self.table().points_to("app-green:8080"))
        self.assertIn("static.example.com {", self.caddyfile.read_text(encoding="utf-8"))


if __name__ == "__main__":
    unittest.main()
