"""Minimal Docker Engine API client for dockcheck.

Speaks HTTP over the daemon's Unix socket with ``http.client``; no SDK.
Covers what a check cycle needs: ping, container listing and inspection,
image inspection, and the mutating calls the orchestrator makes (pull, tag,
remove, prune).

Socket-level failures surface as ``OSError`` and HTTP-level failures as
``DockerAPIError``; callers decide which of those are fatal.
"""

import http.client
import json
import logging
import os
import socket
import urllib.parse
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Oldest engine API with everything used here (Docker 20.10)
API_VERSION = "v1.41"
DEFAULT_SOCKET = "/var/run/docker.sock"
DEFAULT_TIMEOUT = 30
LONG_TIMEOUT = 300  # pull and prune can take minutes


class DockerAPIError(Exception):
    """Non-2xx answer from the engine, or an error object in a progress stream."""

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(f"engine returned {status}: {message}")


class UnixHTTPConnection(http.client.HTTPConnection):
    """``HTTPConnection`` bound to a Unix domain socket path."""

    def __init__(self, socket_path: str, timeout: int = DEFAULT_TIMEOUT):
        super().__init__("docker", timeout=timeout)
        self.socket_path = socket_path

    def connect(self):
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(self.socket_path)
        except OSError:
            sock.close()
            raise
        self.sock = sock


def _socket_from_env() -> str:
    docker_host = os.environ.get("DOCKER_HOST", "")
    if docker_host.startswith("unix://"):
        return docker_host[len("unix://"):]
    if docker_host:
        logger.warning(f"DOCKER_HOST={docker_host} is not a unix socket, using {DEFAULT_SOCKET}")
    return DEFAULT_SOCKET


def _error_message(raw: str) -> str:
    """Engine errors are ``{"message": ...}``; fall back to the raw body."""
    try:
        return json.loads(raw).get("message", raw)
    except (ValueError, AttributeError):
        return raw


def _raise_stream_errors(body: str, status: int) -> None:
    """Pull progress is NDJSON; a failed pull still answers 200 with an error line."""
    for line in body.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            event = json.loads(line)
        except ValueError:
            continue
        if "error" in event:
            detail = (event.get("errorDetail") or {}).get("message") or event["error"]
            raise DockerAPIError(status or 500, detail)


class DockerClient:
    """Engine API calls used by dockcheck, one connection per call."""

    def __init__(self, socket_path: Optional[str] = None):
        self._socket_path = socket_path or _socket_from_env()

    @property
    def socket_path(self) -> str:
        return self._socket_path

    def _call(self, method: str, path: str, query: Optional[Dict[str, Any]] = None,
              timeout: int = DEFAULT_TIMEOUT) -> Tuple[int, str]:
        """Send one request; returns (status, body text) for 2xx answers."""
        url = f"/{API_VERSION}{path}"
        if query:
            url = f"{url}?{urllib.parse.urlencode(query)}"
        logger.debug(f"{method} {url}")

        conn = UnixHTTPConnection(self._socket_path, timeout=timeout)
        try:
            conn.request(method, url)
            response = conn.getresponse()
            body = response.read().decode("utf-8", errors="replace")
        finally:
            conn.close()

        if response.status >= 400:
            raise DockerAPIError(response.status, _error_message(body).strip())
        return response.status, body

    def _json(self, method: str, path: str, query: Optional[Dict[str, Any]] = None,
              timeout: int = DEFAULT_TIMEOUT) -> Any:
        """Decoded JSON body, or None for an empty body."""
        _, body = self._call(method, path, query, timeout)
        return json.loads(body) if body.strip() else None

    @staticmethod
    def _filters(**filters: List[str]) -> Dict[str, str]:
        active = {k: v for k, v in filters.items() if v}
        return {"filters": json.dumps(active)} if active else {}

    # ── System ────────────────────────────────────────────────────

    def ping(self) -> bool:
        """True when ``GET /_ping`` answers ``OK``."""
        _, body = self._call("GET", "/_ping", timeout=10)
        return body.strip() == "OK"

    # ── Containers ────────────────────────────────────────────────

    def list_containers(self, all: bool = False) -> List[Dict[str, Any]]:
        """Summaries (``Id``, ``Names``, ``Image``, ``State``) of running containers.

        With *all*, stopped containers are included too.
        """
        query = {"all": "true"} if all else None
        return self._json("GET", "/containers/json", query) or []

    def inspect_container(self, container: str) -> Dict[str, Any]:
        """Full ``docker inspect`` payload for a container id or name."""
        return self._json("GET", f"/containers/{container}/json") or {}

    # ── Images ────────────────────────────────────────────────────

    def inspect_image(self, image: str) -> Dict[str, Any]:
        return self._json("GET", f"/images/{image}/json") or {}

    def list_images(self, reference: Optional[str] = None,
                    dangling: Optional[bool] = None) -> List[Dict[str, Any]]:
        """Image summaries (``Id``, ``RepoTags``, ``Created``, ``Size``).

        *reference* is an engine-side glob such as ``dockcheck/*``.
        """
        query = self._filters(
            reference=[reference] if reference else [],
            dangling=[] if dangling is None else [str(dangling).lower()],
        )
        return self._json("GET", "/images/json", query) or []

    def pull_image(self, image: str, tag: str) -> None:
        """``docker pull image:tag``; raises on any error line in the progress stream."""
        status, body = self._call("POST", "/images/create",
                                  {"fromImage": image, "tag": tag}, timeout=LONG_TIMEOUT)
        _raise_stream_errors(body, status)

    def tag_image(self, image: str, repo: str, tag: str) -> None:
        """Add ``repo:tag`` to an image given by id or reference."""
        self._call("POST", f"/images/{image}/tag", {"repo": repo, "tag": tag})

    def remove_image(self, reference: str) -> bool:
        """Untag/remove an image.

        Returns False when it is already gone (404) or still used by a
        container (409); other errors propagate.
        """
        try:
            self._call("DELETE", f"/images/{reference}")
        except DockerAPIError as e:
            if e.status in (404, 409):
                logger.debug(f"Not removing {reference}: {e.message}")
                return False
            raise
        return True

    def prune_images(self) -> Dict[str, Any]:
        """``docker image prune -f``: dangling images only.

        The answer carries ``ImagesDeleted`` and ``SpaceReclaimed`` (bytes).
        """
        return self._json("POST", "/images/prune",
                          self._filters(dangling=["true"]), timeout=LONG_TIMEOUT) or {}
