"""Thin wrapper around the compose CLI for a single manifest file.

Prefers the ``docker compose`` plugin and falls back to the legacy
``docker-compose`` binary.  The manifest path is always passed explicitly
with ``-f``; nothing depends on the working directory.
"""

import logging
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

PULL_TIMEOUT = 900
UP_TIMEOUT = 300


class ComposeError(Exception):
    """A compose command failed or no compose binary is installed."""

    def __init__(self, message: str, returncode: Optional[int] = None):
        self.message = message
        self.returncode = returncode
        super().__init__(message)


class ComposeCLI:
    """Run compose commands against one manifest."""

    def __init__(self, compose_file: str):
        self.compose_file = Path(compose_file)
        self._command: Optional[List[str]] = None

    def exists(self) -> bool:
        return self.compose_file.is_file()

    def _detect_command(self) -> List[str]:
        if self._command is not None:
            return self._command

        try:
            result = subprocess.run(
                ['docker', 'compose', 'version'],
                capture_output=True,
                text=True,
                timeout=30,
            )
            if result.returncode == 0:
                self._command = ['docker', 'compose']
                return self._command
        except (FileNotFoundError, subprocess.TimeoutExpired):
            pass

        if shutil.which('docker-compose'):
            self._command = ['docker-compose']
            return self._command

        raise ComposeError("neither 'docker compose' nor 'docker-compose' is available")

    def _run(self, args: List[str], timeout: int) -> str:
        cmd = self._detect_command() + ['-f', str(self.compose_file)] + args
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise ComposeError(f"'{' '.join(args)}' timed out after {timeout}s")

        if result.returncode != 0:
            stderr = (result.stderr or '').strip()
            raise ComposeError(f"'{' '.join(args)}' failed: {stderr}", result.returncode)
        return result.stdout or ''

    def ps_ids(self) -> List[str]:
        """Ids of the running containers of this manifest (``ps -q``)."""
        output = self._run(['ps', '-q'], timeout=60)
        return [line.strip() for line in output.splitlines() if line.strip()]

    def pull(self, service: str) -> None:
        self._run(['pull', service], timeout=PULL_TIMEOUT)

    def up(self, service: str, force_recreate: bool = False) -> None:
        args = ['up', '-d']
        if force_recreate:
            args.append('--force-recreate')
        args.append(service)
        self._run(args, timeout=UP_TIMEOUT)
