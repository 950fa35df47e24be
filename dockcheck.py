#!/usr/bin/env python3
"""
Docker Update Check & Automation

Finds running containers whose image has a newer digest in its registry,
reports them, and optionally updates them through docker compose, taking a
backup tag first and pruning dangling images afterwards.
"""

__version__ = "1.0.0"

import argparse
import logging
import os
import signal
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Callable, Dict, List, NamedTuple, Optional, Any

from backups import cleanup_old_backups, list_backups
from compose import ComposeCLI, ComposeError
from config import UpdateConfig, load_config, save_config, USER_CONFIG_FILE
from digests import pair_has_update, resolve_local
from docker_api import DockerClient, DockerAPIError
from errors import ConfigError, DigestUnresolvable, RuntimeUnavailable
from filters import FilterSpec, matches
from models import ContainerRecord, CycleSummary, DigestPair, UpdateCandidate, UpdateResult
from notify import NotificationResult, send_notifications
from orchestrator import UpdateOrchestrator
from registry import ImageReference, RegistryResolver

# Apply TZ from environment (default UTC) before any logging is configured
os.environ.setdefault('TZ', 'UTC')
if hasattr(time, 'tzset'):
    time.tzset()

LOG_FORMAT = '%(asctime)s - [%(name)s] - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S %Z'


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """Setup logging configuration.

    Handlers go on the root logger so module loggers (registry, notify, ...)
    share the format; returns the ``dockcheck`` logger.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        root.addHandler(handler)

    if log_file:
        file_handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=3)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    return logging.getLogger('dockcheck')


class CheckOutcome(NamedTuple):
    """Result of checking one discovered container."""
    status: str  # inspect_error | filtered | error | up_to_date | update | cancelled
    container: Optional[ContainerRecord] = None
    candidate: Optional[UpdateCandidate] = None


def build_update_message(candidates: List[UpdateCandidate]) -> str:
    if not candidates:
        return "All Docker containers are up to date. No updates available."

    lines = [f"Docker Updates Available: {len(candidates)}", ""]
    for candidate in candidates:
        lines.append(f"Container: {candidate.container.name}")
        lines.append(f"Image: {candidate.container.image_reference}")
        lines.append("Status: Update available")
        lines.append("")
    return "\n".join(lines).rstrip()


def build_completion_message(results: List[UpdateResult], dry_run: bool = False) -> str:
    updated = [r for r in results if r.succeeded]
    failed = [r for r in results if not r.succeeded]
    verb = "Would update" if dry_run else "Successfully updated"

    lines = []
    if updated:
        lines.append(f"{verb} {len(updated)} container(s):")
        lines.append("")
        lines.extend(f"✓ {r.container_name}" for r in updated)
    if failed:
        if lines:
            lines.append("")
        lines.append(f"Failed to update {len(failed)} container(s):")
        lines.extend(f"✗ {r.container_name}: {r.message}" for r in failed)
    return "\n".join(lines)


def prompt_confirm() -> bool:
    """Ask on the terminal whether to apply updates."""
    if not sys.stdin.isatty():
        logging.getLogger('dockcheck').warning(
            "No terminal to confirm updates; use --auto or --yes for unattended runs"
        )
        return False
    try:
        answer = input("Proceed with updates? (y/N): ")
    except EOFError:
        return False
    return answer.strip().lower() == 'y'


class DockerUpdateChecker:
    def __init__(self, config: UpdateConfig,
                 docker: Optional[DockerClient] = None,
                 compose: Optional[ComposeCLI] = None,
                 resolver: Optional[RegistryResolver] = None,
                 notifier: Callable[..., NotificationResult] = send_notifications,
                 confirm: Callable[[], bool] = prompt_confirm,
                 cancel_event: Optional[threading.Event] = None):
        """
        Initialize the update checker.

        Args:
            config: Effective settings (already merged and validated)
            docker: Engine API client (default: local socket)
            compose: Compose wrapper for config.compose_file
            resolver: Registry digest resolver
            notifier: send_notifications-compatible callable
            confirm: Asked before updating in interactive mode
            cancel_event: Set externally to stop between steps
        """
        self.config = config
        self.logger = logging.getLogger('dockcheck')
        self.docker = docker or DockerClient()
        self.compose = compose or ComposeCLI(config.compose_file)
        self.resolver = resolver or RegistryResolver(
            timeout=config.registry_timeout, regctl_path=config.regctl_path
        )
        self.notifier = notifier
        self.confirm = confirm
        self.cancel_event = cancel_event or threading.Event()

    @property
    def mode(self) -> str:
        if self.config.dry_run:
            return "dry-run"
        if self.config.notify_only:
            return "notify-only"
        if self.config.auto_update:
            return "auto"
        if self.config.interactive:
            return "interactive"
        return "confirmed"

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    # ── Discovery ─────────────────────────────────────────────────

    def discover(self) -> List[str]:
        """Return ids of the containers to consider.

        Raises:
            RuntimeUnavailable: when the Docker daemon cannot be reached
        """
        try:
            if not self.docker.ping():
                raise RuntimeUnavailable("Docker daemon did not answer ping")
        except (OSError, DockerAPIError) as e:
            raise RuntimeUnavailable(f"Docker not available at {self.docker.socket_path}: {e}")

        if self.config.use_compose:
            if self.compose.exists():
                try:
                    return self.compose.ps_ids()
                except ComposeError as e:
                    self.logger.warning(
                        f"Could not list compose containers ({e.message}), "
                        f"checking all running containers"
                    )
            else:
                self.logger.info(
                    f"Compose file {self.compose.compose_file} not found, "
                    f"checking all running containers"
                )

        try:
            return [c.get('Id', '') for c in self.docker.list_containers() if c.get('Id')]
        except (OSError, DockerAPIError) as e:
            raise RuntimeUnavailable(f"Failed to list containers: {e}")

    # ── Checking ──────────────────────────────────────────────────

    def check_container(self, container_id: str, spec: FilterSpec,
                        now: Optional[datetime] = None) -> CheckOutcome:
        """Inspect, filter, resolve both digests, and compare for one container."""
        if self.cancelled:
            return CheckOutcome('cancelled')

        try:
            record = ContainerRecord.from_inspect(self.docker.inspect_container(container_id))
        except (DockerAPIError, OSError) as e:
            self.logger.warning(f"Failed to get info for container {container_id[:12]}: {e}")
            return CheckOutcome('inspect_error')

        passed, reason = matches(record, spec, now)
        if not passed:
            self.logger.info(f"Skipping {record.name} ({reason})")
            return CheckOutcome('filtered', record)

        self.logger.info(f"Checking {record.name} ({record.image_reference})...")

        try:
            local = resolve_local(self.docker, record)
        except DigestUnresolvable as e:
            self.logger.warning(f"Could not get digest for {record.name}, skipping: {e}")
            return CheckOutcome('error', record)

        try:
            reference = ImageReference.parse(record.image_reference)
        except ValueError as e:
            self.logger.warning(f"Cannot parse image of {record.name}, skipping: {e}")
            return CheckOutcome('error', record)

        try:
            remote = self.resolver.resolve_remote(reference)
        except DigestUnresolvable as e:
            self.logger.warning(f"Could not query registry for {record.name}, skipping: {e}")
            return CheckOutcome('error', record)

        self.logger.debug(f"{record.name}: local {local[:40]}..., registry {remote[:40]}...")

        pair = DigestPair(local=local, remote=remote)
        if pair_has_update(pair):
            self.logger.info(f"Update available for {record.name}")
            return CheckOutcome('update', record, UpdateCandidate(record, pair))

        self.logger.info(f"{record.name} is up to date")
        return CheckOutcome('up_to_date', record)

    def check_all(self, container_ids: List[str], summary: CycleSummary,
                  now: Optional[datetime] = None) -> None:
        """Check every container, filling counters and candidates on *summary*.

        With check_workers > 1 the read-only checks run in a thread pool;
        candidates keep discovery order either way.
        """
        spec = self.config.filter_spec
        now = now or datetime.now(timezone.utc)

        workers = min(self.config.check_workers, len(container_ids)) or 1
        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                outcomes = list(executor.map(
                    lambda cid: self.check_container(cid, spec, now), container_ids
                ))
        else:
            outcomes = []
            for cid in container_ids:
                outcomes.append(self.check_container(cid, spec, now))
                if self.cancelled:
                    break

        for outcome in outcomes:
            if outcome.status == 'inspect_error':
                summary.errors += 1
            elif outcome.status == 'filtered':
                summary.filtered += 1
            elif outcome.status == 'error':
                summary.checked += 1
                summary.errors += 1
            elif outcome.status in ('up_to_date', 'update'):
                summary.checked += 1
                if outcome.candidate:
                    summary.candidates.append(outcome.candidate)

    # ── Notifications ─────────────────────────────────────────────

    def notify(self, title: str, message: str, priority: str = 'normal',
               metadata: Optional[Dict[str, Any]] = None) -> Optional[NotificationResult]:
        if not self.config.notifications_enabled:
            return None
        return self.notifier(self.config.notifications, title, message, priority, metadata or {})

    # ── Cycle ─────────────────────────────────────────────────────

    def _log_candidates(self, candidates: List[UpdateCandidate]) -> None:
        self.logger.info(f"=== Updates Available: {len(candidates)} ===")
        for index, candidate in enumerate(candidates, 1):
            self.logger.info(f"[{index}] {candidate.container.name} ({candidate.container.image_reference})")

    def _log_results(self, summary: CycleSummary) -> None:
        label = "Would update" if self.config.dry_run else "Updated"
        self.logger.info("=== Update Summary ===")
        self.logger.info(f"{label}: {len(summary.updated)}")
        self.logger.info(f"Failed: {len(summary.failed)}")
        for result in summary.results:
            mark = "✓" if result.succeeded else "✗"
            detail = f" (backup {result.backup_tag})" if result.backup_tag else ""
            self.logger.info(f"  {mark} {result.container_name}{detail}")

    def run_cycle(self) -> CycleSummary:
        """Run one discover → check → report → update → notify cycle."""
        summary = CycleSummary(mode=self.mode)

        if not self.config.check_enabled:
            self.logger.info("Update checking is disabled in configuration")
            return summary

        if self.config.dry_run:
            self.logger.info("=== DRY RUN MODE ===")

        self.logger.info("Starting Docker update check...")
        try:
            container_ids = self.discover()
        except RuntimeUnavailable as e:
            self.logger.error(f"Update check aborted: {e}")
            self.notify(
                "Docker Update Check Failed",
                f"Update check aborted: {e}\n\nCheck logs for details.",
                'high', {"error": str(e)},
            )
            summary.exit_code = 1
            return summary

        summary.discovered = len(container_ids)
        if not container_ids:
            self.logger.warning("No containers found")
            return summary
        self.logger.info(f"Found {len(container_ids)} container(s)")

        self.check_all(container_ids, summary)
        self.logger.info(
            f"Checked {summary.checked} container(s), filtered {summary.filtered}, "
            f"errors {summary.errors}"
        )

        if self.cancelled:
            self.logger.warning("Cancelled during checks; no updates applied")
            return summary

        if summary.checked == 0:
            self.logger.warning("No containers were checked. Possible reasons:")
            self.logger.warning("  - All containers filtered out")
            self.logger.warning("  - Containers don't have digest information")
            self.logger.warning("  - Registry queries are failing")
            return summary

        candidates = summary.candidates
        if not candidates:
            self.logger.info("All containers are up to date!")
            self.notify("Docker Update Check", "All containers are up to date.", 'normal', {})
            return summary

        self._log_candidates(candidates)
        self.notify("Docker Updates Available", build_update_message(candidates),
                    'high', {"count": len(candidates)})

        if self.config.notify_only:
            self.logger.info("Notify-only mode: not performing updates")
            return summary

        if (not self.config.dry_run and not self.config.auto_update
                and self.config.interactive and not self.confirm()):
            self.logger.info("Updates cancelled by user")
            return summary

        orchestrator = UpdateOrchestrator(self.docker, self.config, self.compose, self.cancel_event)
        summary.results = orchestrator.run(candidates)
        self._log_results(summary)

        if summary.results:
            self.notify(
                "Docker Update Complete",
                build_completion_message(summary.results, self.config.dry_run),
                'high' if summary.failed else 'normal',
                {"updated": len(summary.updated), "failed": len(summary.failed)},
            )

        return summary


# ── Utility commands ──────────────────────────────────────────────

def print_backups(docker: DockerClient) -> None:
    backups = list_backups(docker)
    if not backups:
        print("No backup images found")
        return

    print(f"{'REFERENCE':<60} {'SIZE':>10}  CREATED")
    for entry in backups:
        size_mb = (entry['size'] or 0) / 1024 / 1024
        created = datetime.fromtimestamp(entry['created']).strftime('%Y-%m-%d %H:%M') if entry['created'] else '-'
        print(f"{entry['reference']:<60} {size_mb:>8.1f}MB  {created}")


def send_test_notification(config: UpdateConfig) -> bool:
    if not config.notifications_enabled:
        logging.getLogger('dockcheck').warning("Notifications are disabled in configuration")
        return False
    message = (
        "This is a test notification from dockcheck.\n\n"
        f"Timestamp: {datetime.now().isoformat(timespec='seconds')}\n\n"
        "If you received this, your notification configuration is working correctly."
    )
    result = send_notifications(config.notifications, "dockcheck - Test Notification",
                                message, 'normal', {})
    return result.ok


def _ask(prompt: str, current: Any) -> str:
    answer = input(f"{prompt} [{current}]: ").strip()
    return answer if answer else str(current)


def _ask_bool(prompt: str, current: bool) -> bool:
    answer = _ask(f"{prompt} (y/n)", 'y' if current else 'n').lower()
    return answer.startswith('y')


def _ask_int(prompt: str, current: int, minimum: int = 0) -> int:
    while True:
        answer = _ask(prompt, current)
        try:
            value = int(answer)
        except ValueError:
            print("Please enter a number")
            continue
        if value >= minimum:
            return value
        print(f"Please enter a number >= {minimum}")


def configure_interactive(config: UpdateConfig, path=USER_CONFIG_FILE) -> UpdateConfig:
    """Prompt for the general settings and save them to *path*."""
    print("dockcheck configuration (press Enter to keep the current value)\n")
    notifications = dict(config.notifications)
    notifications['enabled'] = _ask_bool("Enable notifications", config.notifications_enabled)
    if notifications['enabled']:
        notifications['channels'] = list(
            c.strip() for c in _ask("Notification channels (comma-separated)",
                                    ','.join(config.notify_channels)).split(',') if c.strip()
        )

    new_config = config.override(
        check_enabled=_ask_bool("Enable update checking", config.check_enabled),
        auto_update=_ask_bool("Apply updates automatically", config.auto_update),
        notify_only=_ask_bool("Only notify, never update", config.notify_only),
        use_compose=_ask_bool("Discover containers from compose file", config.use_compose),
        compose_file=_ask("Compose file", config.compose_file),
        include=_ask("Include containers (comma-separated, empty = all)", ','.join(config.include)),
        exclude=_ask("Exclude containers (comma-separated)", ','.join(config.exclude)),
        label_filter=_ask("Label filter (key=value)", config.label_filter),
        min_age=_ask("Minimum container age (e.g. 7d, 2w)", config.min_age),
        backup_days=_ask_int("Backup retention in days (0 = no backup)", config.backup_days),
        auto_prune=_ask_bool("Prune dangling images after update", config.auto_prune),
        force_recreate=_ask_bool("Force recreate containers", config.force_recreate),
        registry_timeout=_ask_int("Registry timeout in seconds", config.registry_timeout, minimum=1),
        notifications=notifications,
    )
    save_config(new_config, path)
    return new_config


def main():
    parser = argparse.ArgumentParser(
        description='Docker update check & automation'
    )
    parser.add_argument('-v', '--version', action='version', version=f"dockcheck {__version__}")
    parser.add_argument(
        '-c', '--config',
        default=os.environ.get('DOCKCHECK_CONFIG') or None,
        help=f'Path to configuration JSON file (env: DOCKCHECK_CONFIG, default: {USER_CONFIG_FILE})'
    )
    parser.add_argument('-f', '--compose', help='Docker compose file (env: COMPOSE_FILE)')

    behavior = parser.add_argument_group('update behavior')
    behavior.add_argument('-a', '--auto', action='store_true', default=None,
                          help='Update containers without prompting')
    behavior.add_argument('-n', '--notify-only', action='store_true', default=None,
                          help="Only check and notify, don't update")
    behavior.add_argument('-y', '--yes', action='store_true',
                          help='Answer yes to all prompts')
    behavior.add_argument(
        '--dry-run',
        action='store_true',
        default=os.environ.get('DRY_RUN', '').lower() == 'true',
        help='Show what would be done without making any changes (env: DRY_RUN)'
    )

    filtering = parser.add_argument_group('filtering')
    filtering.add_argument('-i', '--include', help='Only these containers (comma-separated globs)')
    filtering.add_argument('-e', '--exclude', help='Skip these containers (comma-separated globs)')
    filtering.add_argument('-l', '--label', help='Only containers with this label (key=value)')
    filtering.add_argument('--min-age', help='Only containers older than AGE (e.g. "7d", "2w")')

    options = parser.add_argument_group('update options')
    options.add_argument('-b', '--backup-days', type=int,
                         help='Back up images and keep backups N days (0 = no backup)')
    options.add_argument('-p', '--prune', action='store_true', default=None,
                         help='Prune dangling images after update')
    options.add_argument('--force-recreate', action='store_true', default=None,
                         help='Force recreate containers even if config unchanged')

    utility = parser.add_argument_group('utility')
    utility.add_argument('--configure', action='store_true', help='Run interactive configuration')
    utility.add_argument('--test-notify', action='store_true', help='Send a test notification')
    utility.add_argument('--list-backups', action='store_true', help='List backup images')
    utility.add_argument('--cleanup-backups', type=int, metavar='N',
                         help='Remove backup images older than N days')
    utility.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.environ.get('LOG_LEVEL', 'INFO').upper(),
        help='Logging level (env: LOG_LEVEL, default: INFO)'
    )
    utility.add_argument('--log-file', default=os.environ.get('LOG_FILE') or None,
                         help='Also log to this file (env: LOG_FILE)')

    args = parser.parse_args()
    logger = setup_logging(args.log_level, args.log_file)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    config = config.override(
        compose_file=args.compose,
        auto_update=args.auto,
        notify_only=args.notify_only,
        include=args.include,
        exclude=args.exclude,
        label_filter=args.label,
        min_age=args.min_age,
        backup_days=args.backup_days,
        auto_prune=args.prune,
        force_recreate=args.force_recreate,
        dry_run=args.dry_run,
        interactive=not args.yes,
    ).validated()

    if args.configure:
        configure_interactive(config, args.config or USER_CONFIG_FILE)
        return

    if args.test_notify:
        sys.exit(0 if send_test_notification(config) else 1)

    docker = DockerClient()

    if args.list_backups or args.cleanup_backups is not None:
        try:
            if args.list_backups:
                print_backups(docker)
            else:
                removed = cleanup_old_backups(docker, args.cleanup_backups, dry_run=config.dry_run)
                logger.info(f"Removed {len(removed)} backup image(s)")
        except (OSError, DockerAPIError) as e:
            logger.error(f"Docker not available: {e}")
            sys.exit(1)
        return

    cancel_event = threading.Event()

    def _handle_signal(signum, frame):
        logger.warning(f"Received signal {signum}, stopping after the current step...")
        cancel_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    checker = DockerUpdateChecker(config, docker=docker, cancel_event=cancel_event)
    summary = checker.run_cycle()
    logger.info("Update check completed")
    sys.exit(summary.exit_code)


if __name__ == '__main__':
    main()
