"""
Reconciler: converge local deployments toward the desired state.

One pass:
  1. Fetch the desired-state manifest (failure aborts the pass)
  2. For each component, in manifest order:
       up to date  -> make sure it is running, nothing else
       missing/old -> fetch key + package, unpack, verify signature,
                      stage payload, load images, swap into place, start
  3. Purge every local deployment the manifest no longer names

A component that fails is logged and reported; it never stops the other
components or the purge. The next pass retries it.
"""

from __future__ import annotations

import logging
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .archive import find_files, unpack_tgz
from .config import AgentConfig
from .errors import OrchestratorError, PackageLayoutError, ReconcileCancelled
from .fetcher import DesiredStateFetcher, PackageFetcher
from .images import DockerImageLoader
from .lifecycle import ComposeLifecycle
from .models import (
    ComponentAction,
    ComponentOutcome,
    ComponentSpec,
    ReconcileReport,
)
from .registry.client import RegistryClient
from .registry.credentials import DockerConfigCredentials
from .signature import verify_detached_signature
from .store import DeploymentStore

logger = logging.getLogger("desiredstate.reconciler")

APP_SUFFIX = ".app"
SIGNATURE_SUFFIX = ".sig"


class _ApplyPipeline:
    """Fetch-verify-unpack-deploy for one component.

    Owns its scratch directory for its whole lifetime; the directory is
    removed on exit whatever happens. ``operation`` names the step in
    flight so failures can be reported precisely.
    """

    def __init__(self, reconciler: Reconciler, component: ComponentSpec, digest: str):
        self._r = reconciler
        self.component = component
        self.digest = digest
        self.operation = "prepare"

    def run(self) -> None:
        name = self.component.name
        with tempfile.TemporaryDirectory(prefix=f"desiredstate-{name}-") as scratch:
            app = self._fetch_and_verify(Path(scratch))
            self._deploy(app)

    def _fetch_and_verify(self, scratch: Path) -> Path:
        packages = self._r.packages

        self.operation = "fetch_key"
        pub_key = packages.read(self.component.key_location)

        self.operation = "fetch_package"
        with packages.open(self.component.package_location) as pkg:
            self.operation = "unpack_package"
            unpack_tgz(pkg, scratch, skip_hidden=True)

        self.operation = "locate_app"
        apps = find_files(scratch, APP_SUFFIX)
        if not apps:
            raise PackageLayoutError(f"No *{APP_SUFFIX} file in package")
        if len(apps) > 1:
            logger.warning(
                "%s: package holds %d app files, using %s",
                self.component.name, len(apps), apps[0].name,
            )
        app = apps[0]

        self.operation = "verify_signature"
        verify_detached_signature(pub_key, app, app.with_name(app.name + SIGNATURE_SUFFIX))
        return app

    def _deploy(self, app: Path) -> None:
        name = self.component.name
        store = self._r.store
        lifecycle = self._r.lifecycle
        directory = store.component_dir(name)

        self.operation = "stage"
        staged = store.stage(name)
        try:
            with open(app, "rb") as fh:
                unpack_tgz(fh, staged, skip_hidden=True)

            self.operation = "load_images"
            self._r.images.load_all(staged)

            store.write_digest(staged, self.digest)

            self.operation = "tear_down"
            if directory.is_dir():
                try:
                    lifecycle.tear_down(directory)
                except OrchestratorError as exc:
                    logger.error("%s: failed to stop old deployment: %s", name, exc)

            self.operation = "install"
            store.install(name, staged)
        except BaseException:
            store.discard(staged)
            raise

        logger.info("%s: deployed digest %s", name, self.digest[:12])
        self.operation = "ensure_running"
        lifecycle.ensure_running(directory)


class Reconciler:
    """Drives local state toward the desired-state manifest.

    All collaborators are injected; the reconciler keeps no state
    between passes beyond what is on disk.

    Args:
        desired_state: Fetches the manifest.
        packages: Fetches keys and packages by location.
        lifecycle: Starts and stops compose deployments.
        images: Loads image archives into the container runtime.
        store: The local deployment directory tree.
        cancel_event: Shutdown signal shared with the control loop.
    """

    def __init__(
        self,
        desired_state: DesiredStateFetcher,
        packages: PackageFetcher,
        lifecycle: ComposeLifecycle,
        images: DockerImageLoader,
        store: DeploymentStore,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.desired_state = desired_state
        self.packages = packages
        self.lifecycle = lifecycle
        self.images = images
        self.store = store
        self.cancel_event = cancel_event or threading.Event()

    @classmethod
    def from_config(
        cls,
        config: AgentConfig,
        cancel_event: Optional[threading.Event] = None,
    ) -> Reconciler:
        """Wire up the production collaborators from configuration."""
        cancel_event = cancel_event or threading.Event()
        client = RegistryClient(
            credentials=DockerConfigCredentials(config.docker_config),
            cancel_event=cancel_event,
            timeout=config.request_timeout,
            insecure_registries=config.insecure_registries,
        )
        return cls(
            desired_state=DesiredStateFetcher(client, config.registry),
            packages=PackageFetcher(client),
            lifecycle=ComposeLifecycle(config.compose_command, timeout=config.command_timeout),
            images=DockerImageLoader(),
            store=DeploymentStore(config.deploy_dir),
            cancel_event=cancel_event,
        )

    def reconcile(self) -> ReconcileReport:
        """Run one reconciliation pass.

        Returns:
            Report of what happened to every component.

        Raises:
            RegistryError, NotFoundError, ParseError: The desired state
                could not be obtained; nothing was changed.
            ReconcileCancelled: Shutdown was requested mid-pass.
        """
        if self.cancel_event.is_set():
            raise ReconcileCancelled("Shutdown requested before pass")

        deployment = self.desired_state.fetch()
        report = ReconcileReport(manifest_name=deployment.metadata.name)

        self.store.ensure()
        self.store.sweep_staging()

        allowed: set[str] = set()
        for component in deployment.components:
            allowed.add(component.name)
            report.record(self._reconcile_component(component))

        for outcome in self._purge(allowed):
            report.record(outcome)

        report.finished_at = datetime.now(timezone.utc)
        logger.debug(
            "Pass done: %d up-to-date, %d applied, %d failed, %d purged",
            len(report.by_action(ComponentAction.UP_TO_DATE)),
            len(report.by_action(ComponentAction.APPLIED)),
            len(report.failed),
            len(report.by_action(ComponentAction.PURGED)),
        )
        return report

    def _reconcile_component(self, component: ComponentSpec) -> ComponentOutcome:
        """Bring one component up to date; never raises except on cancel."""
        name = component.name
        operation = "digest"
        digest: Optional[str] = None
        try:
            digest = component.expected_digest
            directory = self.store.component_dir(name)

            if self.store.read_digest(name) == digest:
                logger.info("%s: deployment is up-to-date", name)
                operation = "ensure_running"
                self.lifecycle.ensure_running(directory)
                return ComponentOutcome(
                    name=name, action=ComponentAction.UP_TO_DATE, digest=digest,
                )

            logger.info("%s: fetching from remote", name)
            pipeline = _ApplyPipeline(self, component, digest)
            try:
                pipeline.run()
            finally:
                operation = pipeline.operation
            return ComponentOutcome(name=name, action=ComponentAction.APPLIED, digest=digest)
        except ReconcileCancelled:
            raise
        except Exception as exc:
            logger.error("%s: %s failed: %s", name, operation, exc)
            return ComponentOutcome(
                name=name,
                action=ComponentAction.FAILED,
                digest=digest,
                operation=operation,
                error=str(exc),
            )

    def _purge(self, allowed: set[str]) -> list[ComponentOutcome]:
        """Tear down and delete local deployments not in the manifest."""
        outcomes = []
        for name in self.store.list_local_components():
            if name in allowed:
                continue
            logger.info("Purging stale deployment %s", name)
            try:
                self.lifecycle.tear_down(self.store.component_dir(name))
            except OrchestratorError as exc:
                logger.error("Failed to stop deployment %s: %s", name, exc)
            try:
                self.store.remove_component(name)
            except OSError as exc:
                logger.error("Failed to remove deployment %s: %s", name, exc)
                outcomes.append(ComponentOutcome(
                    name=name,
                    action=ComponentAction.FAILED,
                    operation="purge",
                    error=str(exc),
                ))
                continue
            outcomes.append(ComponentOutcome(name=name, action=ComponentAction.PURGED))
        return outcomes
