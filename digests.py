"""Local content identity and the update decision.

The local identity is the image's RepoDigests rendered as one string
(``[repo@sha256:... other/repo@sha256:...]``), or the bare image id for
images that were built locally and never pulled.  An update is available
unless the registry digest appears verbatim inside that string.
"""

import logging

from docker_api import DockerClient, DockerAPIError
from errors import DigestUnresolvable
from models import ContainerRecord, DigestPair

logger = logging.getLogger(__name__)


def format_repo_digests(repo_digests) -> str:
    """Render a RepoDigests list the way ``docker inspect`` templates do."""
    return "[" + " ".join(repo_digests) + "]"


def resolve_local(docker: DockerClient, container: ContainerRecord) -> str:
    """Return the opaque local identity for *container*'s image.

    Raises:
        DigestUnresolvable: when the container or its image cannot be inspected
    """
    image_id = container.image_id
    try:
        if not image_id:
            image_id = docker.inspect_container(container.id).get('Image', '')
        if not image_id:
            raise DigestUnresolvable(f"no image id for container {container.name}")
        image_info = docker.inspect_image(image_id) or {}
    except DockerAPIError as e:
        raise DigestUnresolvable(f"cannot inspect image of {container.name}: {e.message}")
    except OSError as e:
        raise DigestUnresolvable(f"cannot reach runtime for {container.name}: {e}")

    repo_digests = image_info.get('RepoDigests') or []
    if repo_digests:
        return format_repo_digests(repo_digests)

    logger.debug(f"{container.name}: no RepoDigests (local build?), using image id")
    return image_id


def has_update(local: str, remote: str) -> bool:
    """True unless *remote* is a substring of *local*.

    Either side empty means up-to-date cannot be proven, so an update is
    reported.  Argument order matters: container identity first, registry
    digest second.
    """
    if not local or not remote:
        return True
    return remote not in local


def pair_has_update(pair: DigestPair) -> bool:
    return has_update(pair.local, pair.remote)
