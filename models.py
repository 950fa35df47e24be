"""Value types shared by discovery, checking and orchestration."""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

COMPOSE_SERVICE_LABEL = "com.docker.compose.service"

# Docker reports Created with nanosecond precision ("...T10:00:00.123456789Z")
_DOCKER_TIME_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})?$"
)


def parse_docker_time(value: str) -> Optional[datetime]:
    """Parse a Docker RFC 3339 timestamp into an aware datetime.

    Returns None when the value is empty or not in the expected format.
    """
    if not value:
        return None
    match = _DOCKER_TIME_RE.match(value.strip())
    if not match:
        return None
    base, fraction, tz = match.groups()
    text = base
    if fraction:
        text += "." + fraction[:6].ljust(6, "0")
    if not tz or tz == "Z":
        tz = "+00:00"
    try:
        return datetime.fromisoformat(text + tz)
    except ValueError:
        return None


@dataclass(frozen=True)
class ContainerRecord:
    """A discovered container, as seen at the start of a check cycle."""
    id: str
    name: str
    image_reference: str
    status: str
    created_at: str
    labels: Dict[str, str] = field(default_factory=dict)
    compose_service: Optional[str] = None
    image_id: str = ""

    @classmethod
    def from_inspect(cls, info: Dict[str, Any]) -> "ContainerRecord":
        """Build a record from a ``GET /containers/{id}/json`` payload."""
        config = info.get("Config") or {}
        labels = dict(config.get("Labels") or {})
        return cls(
            id=info.get("Id", ""),
            name=(info.get("Name") or "").lstrip("/"),
            image_reference=config.get("Image", ""),
            status=(info.get("State") or {}).get("Status", ""),
            created_at=info.get("Created", ""),
            labels=labels,
            compose_service=labels.get(COMPOSE_SERVICE_LABEL) or None,
            image_id=info.get("Image", ""),
        )

    @property
    def created(self) -> Optional[datetime]:
        return parse_docker_time(self.created_at)

    def age_days(self, now: Optional[datetime] = None) -> Optional[int]:
        """Whole days since creation, or None if the timestamp is unusable."""
        created = self.created
        if created is None:
            return None
        now = now or datetime.now(timezone.utc)
        return int((now - created).total_seconds() // 86400)


@dataclass(frozen=True)
class DigestPair:
    """Local and remote content identity of one container's image."""
    local: str
    remote: str


@dataclass(frozen=True)
class UpdateCandidate:
    container: ContainerRecord
    digest_pair: DigestPair


class UpdateState(Enum):
    PENDING = "pending"
    BACKING_UP = "backing_up"
    UPDATING = "updating"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


@dataclass
class UpdateResult:
    """Outcome of processing one candidate."""
    container_name: str
    succeeded: bool
    backup_tag: Optional[str] = None
    state: UpdateState = UpdateState.PENDING
    message: str = ""


@dataclass
class CycleSummary:
    """Aggregate counters and results of one check cycle."""
    discovered: int = 0
    checked: int = 0
    filtered: int = 0
    errors: int = 0
    candidates: List[UpdateCandidate] = field(default_factory=list)
    results: List[UpdateResult] = field(default_factory=list)
    mode: str = ""
    exit_code: int = 0

    @property
    def updated(self) -> List[str]:
        return [r.container_name for r in self.results if r.succeeded]

    @property
    def failed(self) -> List[str]:
        return [r.container_name for r in self.results if not r.succeeded]
