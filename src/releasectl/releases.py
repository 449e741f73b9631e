"""Release pipeline: stage, migrate, swap, restart, health-gate and roll back.

Releases are content addressed. Each artifact is unpacked once into
``<releases_root>/<domain>/<release_id>`` and the site is served from the
``<sites_root>/<domain>/current`` symlink, which is replaced atomically on
every swap.
"""
from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .archive import ArtifactError, digest_artifact, unpack_artifact
from .backoff import Backoff, BackoffExhausted
from .config import HealthConfig
from .errors import (
    CancelledError,
    MigrationFailedError,
    NoRollbackTargetError,
    PreconditionError,
    ReleaseFailedError,
    RollbackFailedError,
)
from .locking import RELEASE_SCOPE, LockManager
from .migrations import MigrationRunner
from .models import MigrationRecord, Release, ReleaseStatus, Site, now_iso
from .providers.health import HealthProbe, HealthResult
from .providers.systemd import SystemdError, SystemdProvider
from .state.sites import SiteRegistry

logger = logging.getLogger("releasectl.releases")

CURRENT_LINK = "current"


@dataclass(slots=True)
class ReleaseOutcome:
    """Result of :meth:`ReleasePipeline.release`."""

    release: Release
    changed: bool
    reused: bool = False
    previous_id: str | None = None
    migrations: list[MigrationRecord] = field(default_factory=list)
    health: HealthResult | None = None


def release_identifier(sequence: int, digest: str) -> str:
    """Return the identifier of the *sequence*-th release built from *digest*."""
    return f"r{sequence:04d}-{digest[:12]}"


class ReleasePipeline:
    """Drive a site from one active release to the next."""

    def __init__(
        self,
        *,
        sites: SiteRegistry,
        locks: LockManager,
        migrations: MigrationRunner,
        systemd: SystemdProvider,
        probe: HealthProbe,
        health: HealthConfig,
        releases_root: Path,
        sites_root: Path,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Wire the pipeline to its collaborators and storage roots."""
        self._sites = sites
        self._locks = locks
        self._migrations = migrations
        self._systemd = systemd
        self._probe = probe
        self._health = health
        self.releases_root = releases_root
        self.sites_root = sites_root
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    def release_dir(self, domain: str, release_id: str) -> Path:
        """Return where *release_id* of *domain* is unpacked."""
        return self.releases_root / domain / release_id

    def current_link(self, domain: str) -> Path:
        """Return the symlink the proxy and service serve *domain* from."""
        return self.sites_root / domain / CURRENT_LINK

    # ------------------------------------------------------------------
    def release(
        self,
        domain: str,
        artifact: Path,
        *,
        cancel: threading.Event | None = None,
    ) -> ReleaseOutcome:
        """Release *artifact* to *domain*.

        Re-releasing the digest that is already active and current is a no-op.
        A migration failure leaves the previous release serving; a health
        failure rolls back to it automatically. Both raise
        :class:`ReleaseFailedError` naming the stage that failed.
        """
        with self._locks.domain_lock(domain, RELEASE_SCOPE, operation="release"):
            site = self._sites.get(domain)
            try:
                digest = digest_artifact(Path(artifact))
            except (ArtifactError, OSError) as exc:
                raise PreconditionError(f"Cannot read artifact {artifact}: {exc}") from exc

            active = self._sites.active_release(site.domain)
            if (
                active is not None
                and active.artifact_digest == digest
                and site.current_release_id == active.id
            ):
                logger.info("Release %s of %s is already active", active.id, site.domain)
                return ReleaseOutcome(release=active, changed=False, previous_id=active.id)

            release, reused = self._stage(site, Path(artifact), digest)
            outcome = ReleaseOutcome(
                release=release,
                changed=True,
                reused=reused,
                previous_id=active.id if active is not None else None,
            )

            if site.is_process:
                outcome.migrations = self._migrate(site, release)

            try:
                result = self._swap_and_check(site, release, cancel)
            except CancelledError:
                self._restore_previous(
                    site, release, active, {"stage": "health", "message": "cancelled"}, None, None
                )
                raise
            outcome.health = result
            if not result.ok:
                self._fail_and_restore(site, release, active, result, cancel)

            promoted = release.evolve(
                status=ReleaseStatus.ACTIVE,
                activated_at=now_iso(),
                health_check_result=result.summary(),
                failure=None,
            )
            updates = [promoted]
            if active is not None and active.id != release.id:
                updates.append(active.evolve(status=ReleaseStatus.INACTIVE))
            self._sites.update_releases(site.domain, *updates)
            outcome.release = promoted
            logger.info("Release %s of %s is active", promoted.id, site.domain)
            return outcome

    def rollback(self, domain: str, *, cancel: threading.Event | None = None) -> Release:
        """Return *domain* to its last known-good release."""
        with self._locks.domain_lock(domain, RELEASE_SCOPE, operation="rollback"):
            return self._rollback(self._sites.get(domain), cancel)

    # ------------------------------------------------------------------
    def _stage(self, site: Site, artifact: Path, digest: str) -> tuple[Release, bool]:
        known = self._sites.find_release_by_digest(site.domain, digest)
        if known is not None:
            path = Path(known.path) if known.path else self.release_dir(site.domain, known.id)
            if not path.is_dir():
                self._unpack(artifact, path, known.id)
            if known.status is ReleaseStatus.ACTIVE:
                logger.info("Re-activating release %s of %s", known.id, site.domain)
                return known, True
            staged = known.evolve(
                status=ReleaseStatus.STAGED, path=str(path), failure=None, activated_at=None
            )
            self._sites.update_releases(site.domain, staged)
            logger.info("Reusing release %s of %s", staged.id, site.domain)
            return staged, True

        release_id = release_identifier(self._sites.next_release_sequence(site.domain), digest)
        path = self.release_dir(site.domain, release_id)
        self._unpack(artifact, path, release_id)
        staged = Release(
            id=release_id,
            site_domain=site.domain,
            artifact_digest=digest,
            status=ReleaseStatus.STAGED,
            path=str(path),
            created_at=now_iso(),
        )
        self._sites.add_release(staged)
        logger.info("Staged release %s of %s", release_id, site.domain)
        return staged, False

    def _unpack(self, artifact: Path, destination: Path, release_id: str) -> None:
        try:
            unpack_artifact(artifact, destination)
        except (ArtifactError, OSError) as exc:
            raise ReleaseFailedError("stage", str(exc), release_id=release_id) from exc

    def _migrate(self, site: Site, release: Release) -> list[MigrationRecord]:
        source = Path(release.path or self.release_dir(site.domain, release.id)) / "migrations"
        try:
            return self._migrations.apply_incremental(site.domain, source=source)
        except MigrationFailedError as exc:
            failed = release.evolve(
                status=ReleaseStatus.ROLLED_BACK,
                failure={"stage": "migration", "version": exc.version, "message": exc.cause},
            )
            self._sites.update_releases(site.domain, failed)
            raise ReleaseFailedError("migration", str(exc), release_id=release.id) from exc

    def _swap_and_check(
        self,
        site: Site,
        release: Release,
        cancel: threading.Event | None,
    ) -> HealthResult:
        target = Path(release.path or self.release_dir(site.domain, release.id))
        _point_symlink(self.current_link(site.domain), target)
        swapped = self._sites.set_active_release(site.domain, release.id)
        if swapped.is_process:
            try:
                self._systemd.restart(swapped.service or swapped.domain)
            except SystemdError as exc:
                logger.error("Restart of %s failed: %s", swapped.domain, exc)
                return HealthResult(ok=False, url=self._probe.url_for(swapped), detail=str(exc))
        return self._await_healthy(swapped, cancel)

    def _await_healthy(self, site: Site, cancel: threading.Event | None) -> HealthResult:
        last: list[HealthResult] = []

        def probe() -> HealthResult | None:
            result = self._probe.check(site)
            last.append(result)
            return result if result.ok else None

        backoff = Backoff(
            initial=self._health.initial_delay,
            maximum=self._health.max_delay,
            attempts=max(1, self._health.attempts),
            cancel=cancel,
            sleep=self._sleep,
            clock=self._clock,
        )
        try:
            return backoff.poll(probe, describe=f"health check of {site.domain}")
        except BackoffExhausted as exc:
            logger.warning(
                "Health check of %s failed after %d attempt(s)", site.domain, exc.attempts
            )
            return last[-1]

    def _fail_and_restore(
        self,
        site: Site,
        release: Release,
        previous: Release | None,
        result: HealthResult,
        cancel: threading.Event | None,
    ) -> None:
        restored = self._restore_previous(
            site,
            release,
            previous,
            {"stage": "health", "message": result.summary()},
            result.summary(),
            cancel,
        )
        if restored is None:
            raise ReleaseFailedError(
                "health",
                f"{result.summary()}; no previous release to restore",
                release_id=release.id,
            )

        raise ReleaseFailedError(
            "health",
            f"{result.summary()}; rolled back to {restored.id}",
            release_id=release.id,
        )

    def _restore_previous(
        self,
        site: Site,
        release: Release,
        previous: Release | None,
        failure: dict[str, object],
        health_summary: str | None,
        cancel: threading.Event | None,
    ) -> Release | None:
        failed = release.evolve(
            status=ReleaseStatus.ROLLED_BACK,
            health_check_result=health_summary,
            failure=failure,
        )
        self._sites.update_releases(site.domain, failed)
        if previous is None:
            self._clear_current(site)
            return None
        return self._rollback(self._sites.get(site.domain), cancel)

    def _clear_current(self, site: Site) -> None:
        self.current_link(site.domain).unlink(missing_ok=True)
        self._sites.set_active_release(site.domain, None)
        if site.is_process:
            try:
                self._systemd.stop(site.service or site.domain)
            except SystemdError as exc:
                logger.warning("Could not stop %s after failed release: %s", site.domain, exc)

    def _rollback(self, site: Site, cancel: threading.Event | None) -> Release:
        target = self._rollback_target(site)
        if target is None:
            raise NoRollbackTargetError(f"No previous release of '{site.domain}' to roll back to.")
        replaced = (
            self._sites.get_release(site.domain, site.current_release_id)
            if site.current_release_id and site.current_release_id != target.id
            else None
        )
        logger.warning("Rolling %s back to %s", site.domain, target.id)

        result = self._swap_and_check(site, target, cancel)
        if not result.ok:
            self._sites.update_releases(
                site.domain,
                target.evolve(
                    health_check_result=result.summary(),
                    failure={"stage": "rollback", "message": result.summary()},
                ),
            )
            raise RollbackFailedError(
                f"Rollback target {target.id} of '{site.domain}' is unhealthy: {result.summary()}"
            )

        restored = target.evolve(
            status=ReleaseStatus.ACTIVE,
            health_check_result=result.summary(),
            activated_at=(
                target.activated_at if target.status is ReleaseStatus.ACTIVE else now_iso()
            ),
            failure=None,
        )
        updates = [restored]
        if replaced is not None and replaced.status in {ReleaseStatus.ACTIVE, ReleaseStatus.STAGED}:
            updates.append(replaced.evolve(status=ReleaseStatus.ROLLED_BACK))
        self._sites.update_releases(site.domain, *updates)
        return restored

    def _rollback_target(self, site: Site) -> Release | None:
        releases = self._sites.releases_for(site.domain)
        for release in releases:
            if release.status is ReleaseStatus.ACTIVE and release.id != site.current_release_id:
                return release
        candidates = [
            release
            for release in releases
            if release.status is ReleaseStatus.INACTIVE and release.id != site.current_release_id
        ]
        if not candidates:
            return None
        return max(enumerate(candidates), key=lambda item: (item[1].activated_at or "", item[0]))[1]


def _point_symlink(link: Path, target: Path) -> None:
    link.parent.mkdir(parents=True, exist_ok=True)
    tmp_link = link.with_name(f".{link.name}.{os.getpid()}.tmp")
    tmp_link.unlink(missing_ok=True)
    os.symlink(target, tmp_link)
    os.replace(tmp_link, link)


__all__ = ["CURRENT_LINK", "ReleaseOutcome", "ReleasePipeline", "release_identifier"]
