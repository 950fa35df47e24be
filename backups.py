"""Backup image tags: create before an update, list, and expire by age.

A backup is just another tag on the pre-update image:

    dockcheck/<container>:<YYYY-MM-DD_HHMM>_<original tag>

so rolling back is ``docker tag`` + recreate, and expiring is ``docker rmi``.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from docker_api import DockerClient, DockerAPIError
from errors import BackupFailed
from models import ContainerRecord
from registry import ImageReference, DEFAULT_TAG

logger = logging.getLogger(__name__)

BACKUP_NAMESPACE = "dockcheck"
TIMESTAMP_FORMAT = "%Y-%m-%d_%H%M"

_BACKUP_RE = re.compile(
    rf"^{BACKUP_NAMESPACE}/(?P<name>[^:]+):"
    r"(?P<ts>\d{4}-\d{2}-\d{2}_\d{4})_(?P<tag>[\w][\w.-]*)$"
)


@dataclass(frozen=True)
class BackupImageTag:
    container_name: str
    original_tag: str
    created_at: datetime

    @classmethod
    def for_container(cls, container: ContainerRecord,
                      now: Optional[datetime] = None) -> "BackupImageTag":
        try:
            original_tag = ImageReference.parse(container.image_reference).tag
        except ValueError:
            original_tag = DEFAULT_TAG
        created = (now or datetime.now()).replace(second=0, microsecond=0)
        # repository names must be lowercase
        return cls(container.name.lower(), original_tag, created)

    @classmethod
    def parse(cls, reference: str) -> Optional["BackupImageTag"]:
        """Parse 'dockcheck/<name>:<timestamp>_<tag>'; None if not a backup tag."""
        match = _BACKUP_RE.match(reference or '')
        if not match:
            return None
        try:
            created = datetime.strptime(match.group('ts'), TIMESTAMP_FORMAT)
        except ValueError:
            return None
        return cls(match.group('name'), match.group('tag'), created)

    @property
    def repository(self) -> str:
        return f"{BACKUP_NAMESPACE}/{self.container_name}"

    @property
    def tag(self) -> str:
        return f"{self.created_at.strftime(TIMESTAMP_FORMAT)}_{self.original_tag}"

    @property
    def reference(self) -> str:
        return f"{self.repository}:{self.tag}"

    def __str__(self) -> str:
        return self.reference


def create_backup(docker: DockerClient, container: ContainerRecord,
                  dry_run: bool = False, now: Optional[datetime] = None) -> BackupImageTag:
    """Tag the image *container* runs as a dated backup.

    Raises:
        BackupFailed: when the runtime refuses the tag
    """
    backup = BackupImageTag.for_container(container, now)
    source = container.image_id or container.image_reference
    if not source:
        raise BackupFailed(f"no image to back up for {container.name}")

    if dry_run:
        logger.info(f"[DRY RUN] Would back up {container.name} as {backup}")
        return backup

    try:
        docker.tag_image(source, backup.repository, backup.tag)
    except (DockerAPIError, OSError) as e:
        raise BackupFailed(f"could not tag {source} as {backup}: {e}")

    logger.info(f"Created backup image: {backup}")
    return backup


def list_backups(docker: DockerClient) -> List[Dict[str, Any]]:
    """Return one entry per backup tag, oldest first.

    Each entry has ``reference``, ``id``, ``size`` (bytes), ``created`` (image
    creation, unix seconds) and ``backup`` (parsed tag or None).
    """
    entries = []
    for image in docker.list_images(f"{BACKUP_NAMESPACE}/*"):
        for repo_tag in image.get('RepoTags') or []:
            if not repo_tag.startswith(f"{BACKUP_NAMESPACE}/"):
                continue
            entries.append({
                'reference': repo_tag,
                'id': image.get('Id', ''),
                'size': image.get('Size', 0),
                'created': image.get('Created', 0),
                'backup': BackupImageTag.parse(repo_tag),
            })

    def sort_key(entry):
        backup = entry['backup']
        if backup:
            return backup.created_at.timestamp()
        return float(entry['created'] or 0)

    entries.sort(key=sort_key)
    return entries


def backup_age_days(entry: Dict[str, Any], now: datetime) -> Optional[float]:
    """Age of a backup entry, from its tag timestamp or the image creation time."""
    backup = entry.get('backup')
    if backup:
        return (now - backup.created_at) / timedelta(days=1)
    created = entry.get('created')
    if created:
        return (now - datetime.fromtimestamp(created)) / timedelta(days=1)
    return None


def cleanup_old_backups(docker: DockerClient, days: int, dry_run: bool = False,
                        now: Optional[datetime] = None) -> List[str]:
    """Remove backup tags older than *days*.  Returns the references removed.

    Removal failures are logged and skipped.
    """
    if not days or days <= 0:
        return []

    now = now or datetime.now()
    removed = []

    try:
        entries = list_backups(docker)
    except (DockerAPIError, OSError) as e:
        logger.warning(f"Could not list backup images: {e}")
        return []

    for entry in entries:
        age = backup_age_days(entry, now)
        if age is None or age <= days:
            continue

        reference = entry['reference']
        if dry_run:
            logger.info(f"[DRY RUN] Would remove old backup image {reference} ({age:.0f}d old)")
            removed.append(reference)
            continue

        try:
            if docker.remove_image(reference):
                logger.info(f"Removed old backup image {reference}")
                removed.append(reference)
            else:
                logger.warning(f"Could not remove {reference} (in use or already gone)")
        except (DockerAPIError, OSError) as e:
            logger.warning(f"Failed to remove {reference}: {e}")

    return removed
