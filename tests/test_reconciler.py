"""Tests for the reconciler.

Packages are real signed archives built in memory; the registry, the
compose orchestrator and the Docker engine are replaced by in-memory
fakes.
"""

from __future__ import annotations

import hashlib
import io
import threading
from pathlib import Path
from typing import Optional

import pytest

from desiredstate.errors import (
    ImageLoadError,
    OrchestratorError,
    ReconcileCancelled,
    RegistryError,
)
from desiredstate.models import ApplicationDeployment, ComponentAction
from desiredstate.reconciler import Reconciler
from desiredstate.store import HASH_FILE, DeploymentStore


def _digest(name: str, version: int) -> str:
    return hashlib.sha256(f"{name}-{version}".encode()).hexdigest()


def _package_location(name: str, version: int) -> str:
    return f"http://ghcr.io/v2/org/{name}/blobs/sha256:{_digest(name, version)}"


def _key_location(name: str) -> str:
    return f"http://ghcr.io/v2/org/{name}-key/blobs/sha256:{'0' * 64}"


def _manifest(*components: tuple[str, int]) -> ApplicationDeployment:
    return ApplicationDeployment.model_validate({
        "metadata": {"name": "site"},
        "spec": {"deploymentProfile": {"type": "compose", "components": [
            {
                "name": name,
                "properties": {
                    "keyLocation": _key_location(name),
                    "packageLocation": _package_location(name, version),
                },
            }
            for name, version in components
        ]}},
    })


class FakeDesiredState:
    def __init__(self, deployment: ApplicationDeployment):
        self.deployment = deployment
        self.error: Optional[Exception] = None
        self.calls = 0

    def fetch(self) -> ApplicationDeployment:
        self.calls += 1
        if self.error:
            raise self.error
        return self.deployment


class FakePackages:
    """Serves blobs from a dict and records every location requested."""

    def __init__(self):
        self.blobs: dict[str, bytes] = {}
        self.errors: dict[str, Exception] = {}
        self.requested: list[str] = []

    def open(self, location: str):
        self.requested.append(location)
        if location in self.errors:
            raise self.errors[location]
        if location not in self.blobs:
            raise RegistryError(f"blob unknown: {location}", status_code=404)
        return io.BytesIO(self.blobs[location])

    def read(self, location: str) -> bytes:
        with self.open(location) as stream:
            return stream.read()


class FakeLifecycle:
    def __init__(self):
        self.running: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.fail: dict[str, Exception] = {}

    def _maybe_fail(self, op: str, name: str) -> None:
        error = self.fail.get(op)
        if error:
            raise error

    def ensure_running(self, directory: Path) -> None:
        self.calls.append(("ensure_running", directory.name))
        self._maybe_fail("ensure_running", directory.name)
        self.running.add(directory.name)

    def tear_down(self, directory: Path) -> None:
        self.calls.append(("tear_down", directory.name))
        self._maybe_fail("tear_down", directory.name)
        self.running.discard(directory.name)

    def ops(self, op: str) -> list[str]:
        return [name for called, name in self.calls if called == op]


class FakeImages:
    def __init__(self):
        self.loaded: list[str] = []
        self.error: Optional[Exception] = None

    def load_all(self, directory: Path) -> list[Path]:
        if self.error:
            raise self.error
        archives = sorted(p for p in directory.rglob("*.tar"))
        self.loaded.extend(p.name for p in archives)
        return archives


class Harness:
    """A reconciler wired to fakes plus helpers to publish packages."""

    def __init__(self, deploy_dir: Path, build_package, public_armor: str):
        self.deploy_dir = deploy_dir
        self.build_package = build_package
        self.public_armor = public_armor
        self.desired = FakeDesiredState(_manifest())
        self.packages = FakePackages()
        self.lifecycle = FakeLifecycle()
        self.images = FakeImages()
        self.store = DeploymentStore(deploy_dir)
        self.cancel = threading.Event()
        self.reconciler = Reconciler(
            desired_state=self.desired,
            packages=self.packages,
            lifecycle=self.lifecycle,
            images=self.images,
            store=self.store,
            cancel_event=self.cancel,
        )

    def publish(self, name: str, version: int, package: Optional[bytes] = None, **build) -> None:
        self.packages.blobs[_key_location(name)] = self.public_armor.encode()
        if package is None:
            build.setdefault("payload", {
                "docker-compose.yaml": f"services:\n  {name}:\n    image: {name}:{version}\n",
            })
            package = self.build_package(**build)
        self.packages.blobs[_package_location(name, version)] = package

    def want(self, *components: tuple[str, int]) -> None:
        self.desired.deployment = _manifest(*components)

    def install_local(self, name: str, version: int, compose: bool = True) -> Path:
        directory = self.deploy_dir / name
        directory.mkdir()
        (directory / HASH_FILE).write_text(_digest(name, version))
        if compose:
            (directory / "docker-compose.yaml").write_text(f"# {name} v{version}\n")
        return directory

    def stored(self, name: str) -> Optional[str]:
        return self.store.read_digest(name)


@pytest.fixture
def h(deploy_dir: Path, build_package, public_armor: str) -> Harness:
    return Harness(deploy_dir, build_package, public_armor)


class TestConvergence:
    """A pass brings every listed component to its desired digest."""

    def test_fresh_deploy_round_trip(self, h: Harness) -> None:
        h.publish("web", 1)
        h.want(("web", 1))

        report = h.reconciler.reconcile()

        assert report.by_action(ComponentAction.APPLIED) == ["web"]
        assert report.ok
        assert h.stored("web") == _digest("web", 1)
        assert "image: web:1" in (h.deploy_dir / "web" / "docker-compose.yaml").read_text()
        assert "web" in h.lifecycle.running

    def test_mixed_up_to_date_and_missing(self, h: Harness) -> None:
        h.install_local("a", 1)
        h.publish("b", 1)
        h.want(("a", 1), ("b", 1))

        report = h.reconciler.reconcile()

        assert report.by_action(ComponentAction.UP_TO_DATE) == ["a"]
        assert report.by_action(ComponentAction.APPLIED) == ["b"]
        assert h.lifecycle.running == {"a", "b"}
        assert not any("/org/a/" in loc for loc in h.packages.requested)
        assert (h.deploy_dir / "a" / "docker-compose.yaml").read_text() == "# a v1\n"

    def test_outcomes_follow_manifest_order(self, h: Harness) -> None:
        for name in ("zeta", "alpha", "mid"):
            h.publish(name, 1)
        h.want(("zeta", 1), ("alpha", 1), ("mid", 1))

        report = h.reconciler.reconcile()

        assert [o.name for o in report.outcomes] == ["zeta", "alpha", "mid"]

    def test_update_replaces_directory(self, h: Harness) -> None:
        old = h.install_local("web", 1)
        (old / "leftover.txt").write_text("stale")
        h.publish("web", 2)
        h.want(("web", 2))

        report = h.reconciler.reconcile()

        assert report.by_action(ComponentAction.APPLIED) == ["web"]
        assert h.stored("web") == _digest("web", 2)
        assert not (h.deploy_dir / "web" / "leftover.txt").exists()
        assert h.lifecycle.ops("tear_down") == ["web"]
        assert h.lifecycle.calls[-1] == ("ensure_running", "web")

    def test_images_are_loaded(self, h: Harness) -> None:
        h.publish("web", 1, payload={
            "docker-compose.yaml": "services: {}\n",
            "images/web.tar": b"fake image archive",
        })
        h.want(("web", 1))

        h.reconciler.reconcile()

        assert h.images.loaded == ["web.tar"]

    def test_hidden_payload_entries_are_not_installed(self, h: Harness) -> None:
        h.publish("web", 1, payload={
            "docker-compose.yaml": "services: {}\n",
            ".hash": "forged",
        })
        h.want(("web", 1))

        h.reconciler.reconcile()

        assert h.stored("web") == _digest("web", 1)


class TestIdempotence:
    """A second pass over an unchanged manifest fetches nothing."""

    def test_second_pass_makes_no_fetches(self, h: Harness) -> None:
        h.publish("web", 1)
        h.publish("db", 1)
        h.want(("web", 1), ("db", 1))
        h.reconciler.reconcile()
        fetched = len(h.packages.requested)

        report = h.reconciler.reconcile()

        assert len(h.packages.requested) == fetched
        assert report.by_action(ComponentAction.UP_TO_DATE) == ["web", "db"]
        assert h.lifecycle.ops("tear_down") == []

    def test_up_to_date_is_restarted_when_down(self, h: Harness) -> None:
        h.install_local("web", 1)
        h.want(("web", 1))

        h.reconciler.reconcile()

        assert h.lifecycle.ops("ensure_running") == ["web"]
        assert h.lifecycle.running == {"web"}


class TestPurge:
    """Local deployments missing from the manifest are removed."""

    def test_removes_unlisted(self, h: Harness) -> None:
        h.install_local("a", 1)
        h.install_local("b", 1)
        h.install_local("c", 1)
        h.want(("a", 1), ("b", 1))

        report = h.reconciler.reconcile()

        assert report.by_action(ComponentAction.PURGED) == ["c"]
        assert not (h.deploy_dir / "c").exists()
        assert h.lifecycle.ops("tear_down") == ["c"]
        assert (h.deploy_dir / "a" / "docker-compose.yaml").read_text() == "# a v1\n"
        assert (h.deploy_dir / "b" / "docker-compose.yaml").read_text() == "# b v1\n"

    def test_empty_manifest_purges_everything(self, h: Harness) -> None:
        h.install_local("a", 1)
        h.install_local("b", 1, compose=False)
        h.want()

        report = h.reconciler.reconcile()

        assert sorted(report.by_action(ComponentAction.PURGED)) == ["a", "b"]
        assert h.store.list_local_components() == []
        assert sorted(h.lifecycle.ops("tear_down")) == ["a", "b"]

    def test_custom_descriptor_is_torn_down(self, h: Harness) -> None:
        """A stale deployment whose compose file has a custom name is still stopped."""
        stale = h.install_local("custom", 1, compose=False)
        (stale / "stack.prod.yaml").write_text("services: {}\n")
        h.want()

        h.reconciler.reconcile()

        assert h.lifecycle.ops("tear_down") == ["custom"]
        assert not stale.exists()

    def test_teardown_failure_still_removes(self, h: Harness) -> None:
        h.install_local("old", 1)
        h.lifecycle.fail["tear_down"] = OrchestratorError("compose down failed", returncode=1)
        h.want()

        report = h.reconciler.reconcile()

        assert report.by_action(ComponentAction.PURGED) == ["old"]
        assert not (h.deploy_dir / "old").exists()

    def test_purge_runs_after_component_failure(self, h: Harness) -> None:
        h.install_local("stale", 1)
        h.want(("web", 1))

        report = h.reconciler.reconcile()

        assert [o.name for o in report.failed] == ["web"]
        assert report.by_action(ComponentAction.PURGED) == ["stale"]

    def test_hidden_directories_are_not_purged(self, h: Harness) -> None:
        (h.deploy_dir / ".cache").mkdir()
        h.want()

        h.reconciler.reconcile()

        assert (h.deploy_dir / ".cache").exists()


class TestRejection:
    """A package that does not verify never changes local state."""

    @pytest.mark.parametrize("build", [{"tamper": True}, {"key": "other"}])
    def test_bad_signature_keeps_old_deployment(self, h: Harness, other_key, build) -> None:
        if build.get("key") == "other":
            build = {"key": other_key}
        h.install_local("web", 1)
        h.publish("web", 2, **build)
        h.want(("web", 2))

        report = h.reconciler.reconcile()

        outcome = report.outcomes[0]
        assert outcome.action == ComponentAction.FAILED
        assert outcome.operation == "verify_signature"
        assert h.stored("web") == _digest("web", 1)
        assert (h.deploy_dir / "web" / "docker-compose.yaml").read_text() == "# web v1\n"
        assert h.lifecycle.ops("tear_down") == []

    def test_bad_signature_on_fresh_component_leaves_nothing(self, h: Harness) -> None:
        h.publish("web", 1, tamper=True)
        h.want(("web", 1))

        h.reconciler.reconcile()

        assert not (h.deploy_dir / "web").exists()
        assert h.store.list_local_components() == []

    def test_package_without_app(self, h: Harness, make_tgz) -> None:
        h.publish("web", 1, package=make_tgz({"README": "nothing here"}))
        h.want(("web", 1))

        outcome = h.reconciler.reconcile().outcomes[0]

        assert outcome.action == ComponentAction.FAILED
        assert outcome.operation == "locate_app"

    def test_corrupt_package(self, h: Harness) -> None:
        h.publish("web", 1, package=b"not a tarball")
        h.want(("web", 1))

        outcome = h.reconciler.reconcile().outcomes[0]

        assert outcome.operation == "unpack_package"


class TestFailureIsolation:
    """One component failing never stops the others."""

    def test_fetch_failure_is_isolated(self, h: Harness) -> None:
        h.publish("a", 1)
        h.publish("b", 1)
        h.packages.errors[_package_location("a", 1)] = RegistryError("connection reset")
        h.want(("a", 1), ("b", 1))

        report = h.reconciler.reconcile()

        failed = report.failed[0]
        assert failed.name == "a"
        assert failed.operation == "fetch_package"
        assert "connection reset" in failed.error
        assert report.by_action(ComponentAction.APPLIED) == ["b"]
        assert h.stored("a") is None

    def test_missing_key(self, h: Harness) -> None:
        h.publish("web", 1)
        del h.packages.blobs[_key_location("web")]
        h.want(("web", 1))

        assert h.reconciler.reconcile().outcomes[0].operation == "fetch_key"

    def test_image_load_failure_keeps_old_and_cleans_staging(self, h: Harness) -> None:
        h.install_local("web", 1)
        h.publish("web", 2)
        h.images.error = ImageLoadError("daemon gone")
        h.want(("web", 2))

        outcome = h.reconciler.reconcile().outcomes[0]

        assert outcome.operation == "load_images"
        assert h.stored("web") == _digest("web", 1)
        assert [p.name for p in h.deploy_dir.iterdir()] == ["web"]

    def test_update_without_known_descriptor_tears_down(self, h: Harness) -> None:
        h.install_local("web", 1, compose=False)
        h.publish("web", 2)
        h.want(("web", 2))

        h.reconciler.reconcile()

        assert h.lifecycle.ops("tear_down") == ["web"]
        assert h.stored("web") == _digest("web", 2)

    def test_teardown_failure_does_not_block_update(self, h: Harness) -> None:
        h.install_local("web", 1)
        h.publish("web", 2)
        h.lifecycle.fail["tear_down"] = OrchestratorError("down failed", returncode=1)
        h.want(("web", 2))

        report = h.reconciler.reconcile()

        assert report.by_action(ComponentAction.APPLIED) == ["web"]
        assert h.stored("web") == _digest("web", 2)

    def test_start_failure_keeps_new_digest(self, h: Harness) -> None:
        h.publish("web", 1)
        h.lifecycle.fail["ensure_running"] = OrchestratorError("up failed", returncode=1)
        h.want(("web", 1))

        outcome = h.reconciler.reconcile().outcomes[0]

        assert outcome.action == ComponentAction.FAILED
        assert outcome.operation == "ensure_running"
        assert h.stored("web") == _digest("web", 1)

    def test_unparseable_location_fails_component(self, h: Harness) -> None:
        h.desired.deployment = ApplicationDeployment.model_validate({
            "spec": {"deploymentProfile": {"components": [{
                "name": "web",
                "properties": {"keyLocation": "k", "packageLocation": "http://ghcr.io/v2/org/web/blobs/latest"},
            }]}},
        })

        outcome = h.reconciler.reconcile().outcomes[0]

        assert outcome.action == ComponentAction.FAILED
        assert outcome.operation == "digest"


class TestPassAbort:
    """Failures that abort the whole pass."""

    def test_desired_state_failure_changes_nothing(self, h: Harness) -> None:
        h.install_local("web", 1)
        h.desired.error = RegistryError("registry down")

        with pytest.raises(RegistryError):
            h.reconciler.reconcile()

        assert h.store.list_local_components() == ["web"]
        assert h.lifecycle.calls == []

    def test_cancelled_before_pass(self, h: Harness) -> None:
        h.cancel.set()

        with pytest.raises(ReconcileCancelled):
            h.reconciler.reconcile()
        assert h.desired.calls == 0

    def test_cancelled_mid_pass_skips_purge(self, h: Harness) -> None:
        h.install_local("stale", 1)
        h.publish("web", 1)
        h.packages.errors[_key_location("web")] = ReconcileCancelled("shutdown")
        h.want(("web", 1))

        with pytest.raises(ReconcileCancelled):
            h.reconciler.reconcile()

        assert (h.deploy_dir / "stale").exists()

    def test_staging_leftovers_are_swept(self, h: Harness) -> None:
        (h.deploy_dir / ".staging-web-abc").mkdir()
        h.want()

        h.reconciler.reconcile()

        assert not (h.deploy_dir / ".staging-web-abc").exists()
