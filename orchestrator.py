"""Apply updates to candidates one at a time: backup, update, prune.

Each candidate moves through PENDING -> BACKING_UP -> UPDATING -> VERIFYING
and ends DONE or FAILED.  A failure is recorded on that candidate's result
and the next candidate is processed as usual.  Updates are never run in
parallel so compose never sees two concurrent mutations of one manifest.
"""

import logging
import threading
from typing import List, Optional

from backups import create_backup, cleanup_old_backups
from compose import ComposeCLI, ComposeError
from config import UpdateConfig
from docker_api import DockerClient, DockerAPIError
from errors import BackupFailed, StandaloneUpdateUnsupported, UpdateFailed
from models import ContainerRecord, UpdateCandidate, UpdateResult, UpdateState
from registry import ImageReference

logger = logging.getLogger(__name__)


class UpdateOrchestrator:
    def __init__(self, docker: DockerClient, config: UpdateConfig,
                 compose: Optional[ComposeCLI] = None,
                 cancel_event: Optional[threading.Event] = None):
        """
        Args:
            docker: Engine API client
            config: effective settings (backup_days, auto_prune,
                    force_recreate, compose_file, dry_run)
            compose: compose wrapper for config.compose_file
            cancel_event: when set, no further candidate is started
        """
        self.docker = docker
        self.config = config
        self.compose = compose or ComposeCLI(config.compose_file)
        self.cancel_event = cancel_event or threading.Event()

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    def is_compose_managed(self, container: ContainerRecord) -> bool:
        return bool(container.compose_service) and self.compose.exists()

    def _backup(self, container: ContainerRecord, result: UpdateResult) -> None:
        result.state = UpdateState.BACKING_UP
        try:
            backup = create_backup(self.docker, container, dry_run=self.dry_run)
            result.backup_tag = backup.reference
        except BackupFailed as e:
            logger.warning(f"Backup failed for {container.name}, updating without backup: {e}")

    def _update_compose(self, container: ContainerRecord) -> None:
        service = container.compose_service
        force = self.config.force_recreate
        if self.dry_run:
            logger.info(
                f"[DRY RUN] Would pull and recreate service {service} "
                f"from {self.compose.compose_file}{' (force-recreate)' if force else ''}"
            )
            return

        logger.info(f"Pulling new image for service: {service}")
        try:
            self.compose.pull(service)
            self.compose.up(service, force_recreate=force)
        except ComposeError as e:
            raise UpdateFailed(f"compose update of service {service} failed: {e.message}")

    def _update_standalone(self, container: ContainerRecord) -> None:
        try:
            ref = ImageReference.parse(container.image_reference)
        except ValueError as e:
            raise UpdateFailed(f"cannot parse image of {container.name}: {e}")

        if self.dry_run:
            logger.info(f"[DRY RUN] Would pull {ref}")
        else:
            logger.info(f"Pulling new image: {ref}")
            try:
                self.docker.pull_image(ref.repository, ref.tag)
            except (DockerAPIError, OSError) as e:
                raise UpdateFailed(f"failed to pull {ref}: {e}")

        raise StandaloneUpdateUnsupported(
            f"{container.name} is not compose-managed and needs manual recreation: "
            f"run 'docker stop {container.name} && docker rm {container.name}', "
            f"then re-run your original 'docker run' command with {ref}"
        )

    def update_one(self, candidate: UpdateCandidate) -> UpdateResult:
        """Process one candidate.  Never raises."""
        container = candidate.container
        result = UpdateResult(container_name=container.name, succeeded=False)
        logger.info(f"Updating {container.name}...")

        try:
            if self.config.backup_days > 0:
                self._backup(container, result)

            result.state = UpdateState.UPDATING
            if self.is_compose_managed(container):
                self._update_compose(container)
            else:
                self._update_standalone(container)

            # pull/up exit status is the only verification
            result.state = UpdateState.VERIFYING
            result.state = UpdateState.DONE
            result.succeeded = True
            if self.dry_run:
                result.message = "would update"
                logger.info(f"[DRY RUN] Would update {container.name}")
            else:
                result.message = "updated"
                logger.info(f"Updated {container.name}")

        except StandaloneUpdateUnsupported as e:
            result.state = UpdateState.FAILED
            result.message = str(e)
            logger.warning(f"Standalone container updates require manual recreation: {e}")
        except UpdateFailed as e:
            result.state = UpdateState.FAILED
            result.message = str(e)
            logger.error(f"Failed to update {container.name}: {e}")
        except Exception as e:
            result.state = UpdateState.FAILED
            result.message = f"unexpected error: {e}"
            logger.exception(f"Unexpected error updating {container.name}")

        return result

    def prune(self) -> None:
        """Remove dangling images once per cycle."""
        if self.dry_run:
            logger.info("[DRY RUN] Would prune dangling images")
            return

        logger.info("Pruning dangling images...")
        try:
            response = self.docker.prune_images()
        except (DockerAPIError, OSError) as e:
            logger.warning(f"Image prune failed: {e}")
            return

        deleted = response.get('ImagesDeleted') or []
        reclaimed = response.get('SpaceReclaimed') or 0
        if deleted:
            logger.info(f"Pruned {len(deleted)} dangling image(s), reclaimed {reclaimed / 1024 / 1024:.1f} MB")
        else:
            logger.info("No dangling images to prune")

    def run(self, candidates: List[UpdateCandidate]) -> List[UpdateResult]:
        """Update every candidate in order, then prune if configured."""
        results: List[UpdateResult] = []
        logger.info("Starting update process...")

        if self.config.backup_days > 0:
            cleanup_old_backups(self.docker, self.config.backup_days, dry_run=self.dry_run)

        for candidate in candidates:
            if self.cancel_event.is_set():
                logger.warning(
                    f"Cancelled; {len(candidates) - len(results)} update(s) not started"
                )
                return results
            results.append(self.update_one(candidate))

        if self.config.auto_prune:
            self.prune()

        success_count = sum(1 for r in results if r.succeeded)
        if success_count == len(results):
            logger.info(f"Container update summary: {success_count}/{len(results)} succeeded (all)")
        else:
            logger.warning(f"Container update summary: {success_count}/{len(results)} succeeded")

        return results
