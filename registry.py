"""Image reference parsing and remote digest resolution.

dockcheck does not speak the registry protocol itself.  Remote digests come
from ``regctl`` (which handles auth, rate limits and multi-arch manifest
lists for every registry it knows), and when that fails, from the runtime's
own ``docker manifest inspect``.
"""

import logging
import re
import subprocess
from dataclasses import dataclass
from typing import List, Optional

from errors import DigestUnresolvable

logger = logging.getLogger(__name__)

# Constants
DEFAULT_REGISTRY = "docker.io"
DEFAULT_NAMESPACE = "library"
DEFAULT_TAG = "latest"
GHCR_REGISTRY = "ghcr.io"
DOCKER_HUB_ALIASES = {"docker.io", "index.docker.io", "registry-1.docker.io"}
DEFAULT_REGISTRY_TIMEOUT = 10

_DIGEST_FIELD_RE = re.compile(r'"digest"\s*:\s*"([^"]*)"')


@dataclass(frozen=True)
class ImageReference:
    """A parsed image reference: registry host, repository path and tag."""
    registry_host: str
    repository_path: str
    tag: str = DEFAULT_TAG
    digest: Optional[str] = None

    @classmethod
    def parse(cls, image: str) -> "ImageReference":
        """
        Parse an image string as the runtime would.

        Args:
            image: e.g. 'nginx', 'acme/app:1.2', 'ghcr.io/org/app:v1',
                   'localhost:5000/app', 'nginx:1.25@sha256:...'

        Returns:
            ImageReference with defaults applied ('docker.io', 'library/',
            'latest')
        """
        image = image.strip()
        if not image:
            raise ValueError("empty image reference")

        digest = None
        if '@' in image:
            image, digest = image.split('@', 1)

        # Registry indicators: a dot, a port colon, or "localhost" before the first '/'
        parts = image.split('/', 1)
        first = parts[0]
        if len(parts) > 1 and ('.' in first or ':' in first or first == 'localhost'):
            registry = first
            remaining = parts[1]
        else:
            registry = DEFAULT_REGISTRY
            remaining = image

        # Tag colon must come after the last slash (not a registry port)
        tag = DEFAULT_TAG
        last_slash = remaining.rfind('/')
        last_colon = remaining.rfind(':')
        if last_colon > last_slash:
            tag = remaining[last_colon + 1:] or DEFAULT_TAG
            remaining = remaining[:last_colon]

        if registry in DOCKER_HUB_ALIASES:
            registry = DEFAULT_REGISTRY
            if '/' not in remaining:
                remaining = f"{DEFAULT_NAMESPACE}/{remaining}"

        if not remaining:
            raise ValueError(f"image reference '{image}' has no repository")

        return cls(registry, remaining, tag, digest)

    @property
    def is_docker_hub(self) -> bool:
        return self.registry_host == DEFAULT_REGISTRY

    @property
    def is_ghcr(self) -> bool:
        return self.registry_host == GHCR_REGISTRY

    @property
    def repository(self) -> str:
        """Repository as the runtime stores it (no default registry prefix)."""
        if self.is_docker_hub:
            return self.repository_path
        return f"{self.registry_host}/{self.repository_path}"

    def qualified(self) -> str:
        """Fully qualified form, registry host always present."""
        ref = f"{self.registry_host}/{self.repository_path}:{self.tag}"
        if self.digest:
            ref += f"@{self.digest}"
        return ref

    def __str__(self) -> str:
        ref = f"{self.repository}:{self.tag}"
        if self.digest:
            ref += f"@{self.digest}"
        return ref


def extract_first_digest(manifest_output: str) -> Optional[str]:
    """Return the first ``"digest": "..."`` value in raw manifest output."""
    match = _DIGEST_FIELD_RE.search(manifest_output or '')
    if match and match.group(1):
        return match.group(1)
    return None


class RegistryResolver:
    """Resolve the registry digest of an image reference.

    regctl is tried first; ``docker manifest inspect`` is the fallback.
    Each external call is bounded by *timeout* seconds.
    """

    def __init__(self, timeout: int = DEFAULT_REGISTRY_TIMEOUT,
                 regctl_path: str = "regctl", docker_bin: str = "docker"):
        self.timeout = timeout
        self.regctl_path = regctl_path
        self.docker_bin = docker_bin

    def _run(self, cmd: List[str]) -> Optional[str]:
        """Run *cmd* with the resolver timeout; stdout on success, else None."""
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            logger.debug(f"{cmd[0]} not installed")
            return None
        except subprocess.TimeoutExpired:
            logger.debug(f"{' '.join(cmd)} timed out after {self.timeout}s")
            return None

        if result.returncode != 0:
            logger.debug(f"{' '.join(cmd)} exited {result.returncode}: {(result.stderr or '').strip()}")
            return None
        return (result.stdout or '').strip() or None

    def regctl_digest(self, image: str) -> Optional[str]:
        """Digest via ``regctl image digest --list`` (manifest list aware)."""
        return self._run([self.regctl_path, "-v", "error", "image", "digest", "--list", image])

    def manifest_digest(self, image: str) -> Optional[str]:
        """First digest field of ``docker manifest inspect`` output."""
        output = self._run([self.docker_bin, "manifest", "inspect", image])
        if not output:
            return None
        return extract_first_digest(output)

    def resolve_remote(self, reference: ImageReference) -> str:
        """
        Return the remote digest for *reference*.

        Raises:
            DigestUnresolvable: when both sources fail
        """
        image = str(reference)

        digest = self.regctl_digest(image)
        if digest:
            return digest

        logger.debug(f"regctl could not resolve {image}, trying manifest inspect")
        digest = self.manifest_digest(image)
        if digest:
            return digest

        raise DigestUnresolvable(f"registry unreachable or image unknown: {image}")
