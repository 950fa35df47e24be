"""Shared fixtures for dockcheck tests."""

from fnmatch import fnmatchcase
from typing import Dict, List, Optional

import pytest

from compose import ComposeError
from config import UpdateConfig
from docker_api import DockerAPIError
from errors import DigestUnresolvable
from models import COMPOSE_SERVICE_LABEL, ContainerRecord

# ---------------------------------------------------------------------------
# Digests used across tests
# ---------------------------------------------------------------------------

DIGEST_A = "sha256:" + "a" * 64
DIGEST_B = "sha256:" + "b" * 64
DIGEST_C = "sha256:" + "c" * 64

MUTATING_CALLS = {"pull_image", "tag_image", "remove_image", "prune_images"}


# ---------------------------------------------------------------------------
# Payload factories
# ---------------------------------------------------------------------------

def make_container_info(cid: str, name: str, image: str,
                        image_id: Optional[str] = None,
                        labels: Optional[Dict[str, str]] = None,
                        created: str = "2024-01-01T10:00:00.123456789Z",
                        status: str = "running") -> dict:
    """Minimal ``GET /containers/{id}/json`` payload."""
    return {
        "Id": cid,
        "Name": f"/{name}",
        "Created": created,
        "Image": image_id or f"sha256:img-{name}",
        "State": {"Status": status},
        "Config": {"Image": image, "Labels": labels or {}},
    }


def make_image_info(image_id: str, repo_digests: List[str],
                    repo_tags: Optional[List[str]] = None,
                    created: int = 1700000000, size: int = 50 * 1024 * 1024) -> dict:
    return {
        "Id": image_id,
        "RepoDigests": repo_digests,
        "RepoTags": repo_tags or [],
        "Created": created,
        "Size": size,
    }


def make_record(name: str = "web", image: str = "nginx:latest",
                compose_service: Optional[str] = None,
                labels: Optional[Dict[str, str]] = None,
                created: str = "2024-01-01T10:00:00Z") -> ContainerRecord:
    labels = dict(labels or {})
    if compose_service:
        labels[COMPOSE_SERVICE_LABEL] = compose_service
    return ContainerRecord.from_inspect(
        make_container_info(f"id-{name}", name, image, labels=labels, created=created)
    )


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeDocker:
    """In-memory stand-in for DockerClient that records every call."""

    socket_path = "/var/run/docker.sock"

    def __init__(self, reachable: bool = True):
        self.reachable = reachable
        self.containers: Dict[str, dict] = {}
        self.images: Dict[str, dict] = {}
        self.calls: List[tuple] = []
        self.fail_tag = False
        self.prune_response = {"ImagesDeleted": [], "SpaceReclaimed": 0}

    def add_container(self, cid: str, name: str, image: str, repo_digests=None,
                      labels=None, created="2024-01-01T10:00:00.123456789Z") -> dict:
        info = make_container_info(cid, name, image, labels=labels, created=created)
        self.containers[cid] = info
        self.images[info["Image"]] = make_image_info(info["Image"], list(repo_digests or []))
        return info

    def add_image(self, image_id: str, repo_tags: List[str], created: int = 1700000000) -> None:
        self.images[image_id] = make_image_info(image_id, [], repo_tags, created=created)

    def mutating_calls(self) -> List[tuple]:
        return [c for c in self.calls if c[0] in MUTATING_CALLS]

    def _record(self, name: str, *args) -> None:
        self.calls.append((name,) + args)
        if not self.reachable:
            raise ConnectionRefusedError(2, "No such file or directory")

    def ping(self) -> bool:
        self._record("ping")
        return True

    def list_containers(self, all: bool = False) -> List[dict]:
        self._record("list_containers")
        return [{"Id": cid} for cid in self.containers]

    def inspect_container(self, name: str) -> dict:
        self._record("inspect_container", name)
        if name not in self.containers:
            raise DockerAPIError(404, f"No such container: {name}")
        return self.containers[name]

    def inspect_image(self, image: str) -> dict:
        self._record("inspect_image", image)
        if image not in self.images:
            raise DockerAPIError(404, f"No such image: {image}")
        return self.images[image]

    def list_images(self, reference: Optional[str] = None, dangling=None) -> List[dict]:
        self._record("list_images", reference)
        images = list(self.images.values())
        if reference:
            images = [
                img for img in images
                if any(fnmatchcase(t.split(":")[0], reference) for t in img.get("RepoTags") or [])
            ]
        return images

    def tag_image(self, image: str, repo: str, tag: str) -> None:
        self._record("tag_image", image, repo, tag)
        if self.fail_tag:
            raise DockerAPIError(500, "tag refused")

    def remove_image(self, image_ref: str) -> bool:
        self._record("remove_image", image_ref)
        return True

    def prune_images(self) -> dict:
        self._record("prune_images")
        return self.prune_response

    def pull_image(self, image: str, tag: str) -> None:
        self._record("pull_image", image, tag)


class FakeResolver:
    """Registry resolver answering from a dict of 'repo:tag' -> digest."""

    def __init__(self, digests: Optional[Dict[str, str]] = None):
        self.digests = dict(digests or {})
        self.queried: List[str] = []

    def resolve_remote(self, reference) -> str:
        image = str(reference)
        self.queried.append(image)
        if image not in self.digests:
            raise DigestUnresolvable(f"registry unreachable or image unknown: {image}")
        return self.digests[image]


class FakeCompose:
    """ComposeCLI stand-in; services listed in *failing* fail on pull."""

    def __init__(self, present: bool = True, ids: Optional[List[str]] = None, failing=()):
        self.compose_file = "/srv/docker-compose.yml"
        self.present = present
        self.ids = ids
        self.failing = set(failing)
        self.pulled: List[str] = []
        self.upped: List[tuple] = []

    def exists(self) -> bool:
        return self.present

    def ps_ids(self) -> List[str]:
        if self.ids is None:
            raise ComposeError("'ps -q' failed: no such service", 1)
        return list(self.ids)

    def pull(self, service: str) -> None:
        if service in self.failing:
            raise ComposeError(f"'pull {service}' failed: manifest unknown", 1)
        self.pulled.append(service)

    def up(self, service: str, force_recreate: bool = False) -> None:
        self.upped.append((service, force_recreate))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_docker():
    return FakeDocker()


@pytest.fixture
def fake_compose():
    return FakeCompose()


@pytest.fixture
def base_config():
    """Non-interactive auto-update config with backups and prune disabled."""
    return UpdateConfig(
        auto_update=True,
        use_compose=False,
        backup_days=0,
        auto_prune=False,
        interactive=False,
    )


@pytest.fixture
def notif_config():
    return {
        "enabled": True,
        "channels": ["ntfy", "discord"],
        "ntfy": {"url": "https://ntfy.example.com", "topic": "docker"},
        "discord": {"webhook": "https://discord.example.com/api/webhooks/1/abc"},
    }


@pytest.fixture
def full_config_file():
    """A settings file using every top-level key."""
    return {
        "check_enabled": True,
        "auto_update": False,
        "notify_only": True,
        "use_compose": True,
        "compose_file": "/srv/docker-compose.yml",
        "include": ["web*", "db"],
        "exclude": "test-*",
        "label_filter": "dockcheck.enable=true",
        "min_age": "2w",
        "backup_days": 14,
        "auto_prune": False,
        "force_recreate": True,
        "registry_timeout": 20,
        "check_workers": 4,
        "regctl_path": "/usr/local/bin/regctl",
        "notifications": {
            "enabled": True,
            "channels": ["gotify", "webhook"],
            "gotify": {"url": "https://gotify.example.com", "token": "abc", "priority": 8},
            "webhook": {
                "url": "https://hooks.example.com/x",
                "method": "PUT",
                "headers": {"X-Token": "secret"},
                "body_template": '{"text": "$title"}',
            },
        },
    }
