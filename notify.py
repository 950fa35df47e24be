"""
Notification channels for dockcheck.

Every channel is a small class with a ``send(title, message, priority,
metadata) -> bool`` method, registered under its config name in
``CHANNELS``.  Failures are logged as warnings and never re-raised so that a
broken channel cannot interrupt the update cycle; the dispatcher reports
overall failure only when every configured channel failed.
"""

import html
import json
import logging
import os
import smtplib
import string
import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Dict, Iterable, List, Optional, Type

import requests

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 10  # seconds
_SCRIPT_TIMEOUT = 60

_NTFY_PRIORITIES = {'min', 'low', 'default', 'high', 'urgent'}
_NTFY_PRIORITY_MAP = {'low': 'low', 'normal': 'default', 'high': 'high'}
_GOTIFY_PRIORITY_MAP = {'low': 2, 'normal': 5, 'high': 8}

DEFAULT_USERNAME = "Docker Update Bot"


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Channel:
    """Base class for notification channels."""

    name = ""

    def __init__(self, cfg: Optional[Dict[str, Any]] = None):
        self.cfg = cfg or {}

    def send(self, title: str, message: str, priority: str = 'normal',
             metadata: Optional[Dict[str, Any]] = None) -> bool:
        raise NotImplementedError

    def _post(self, url: str, **kwargs) -> requests.Response:
        response = requests.post(url, timeout=_REQUEST_TIMEOUT, **kwargs)
        response.raise_for_status()
        return response


CHANNELS: Dict[str, Type[Channel]] = {}


def register_channel(cls: Type[Channel]) -> Type[Channel]:
    """Class decorator adding a channel to ``CHANNELS`` under ``cls.name``."""
    CHANNELS[cls.name] = cls
    return cls


@register_channel
class GotifyChannel(Channel):
    """Config keys: url, token, priority (0-10, default from message priority)."""

    name = "gotify"

    def send(self, title, message, priority='normal', metadata=None):
        url = (self.cfg.get('url') or '').rstrip('/')
        token = self.cfg.get('token') or ''
        if not url or not token:
            logger.warning("gotify: not configured (missing url or token)")
            return False

        gotify_priority = self.cfg.get('priority')
        if gotify_priority is None:
            gotify_priority = _GOTIFY_PRIORITY_MAP.get(priority, 5)

        try:
            self._post(f"{url}/message",
                       headers={'X-Gotify-Key': token},
                       json={'title': title, 'message': message, 'priority': gotify_priority})
            logger.info("gotify: notification sent")
            return True
        except requests.RequestException as e:
            logger.warning("gotify: failed to send notification: %s", e)
            return False


@register_channel
class NtfyChannel(Channel):
    """POST to an ntfy topic.

    Config keys:
        url      (optional) Server URL (default: https://ntfy.sh)
        topic    (required) Topic name
        priority (optional) min / low / default / high / urgent
        token    (optional) Access token sent as a Bearer header
    """

    name = "ntfy"

    def send(self, title, message, priority='normal', metadata=None):
        topic = (self.cfg.get('topic') or '').strip()
        if not topic:
            logger.warning("ntfy: not configured (missing topic)")
            return False

        server = (self.cfg.get('url') or 'https://ntfy.sh').rstrip('/')
        ntfy_priority = self.cfg.get('priority') or _NTFY_PRIORITY_MAP.get(priority, 'default')
        if ntfy_priority not in _NTFY_PRIORITIES:
            ntfy_priority = 'default'

        headers: Dict[str, str] = {
            'Title': title,
            'Priority': ntfy_priority,
            'Tags': 'package',
            'Content-Type': 'text/plain',
        }
        token = self.cfg.get('token')
        if token:
            headers['Authorization'] = f"Bearer {token}"

        try:
            self._post(f"{server}/{topic}", data=message.encode('utf-8'), headers=headers)
            logger.info("ntfy: notification sent")
            return True
        except requests.RequestException as e:
            logger.warning("ntfy: failed to send notification: %s", e)
            return False


@register_channel
class DiscordChannel(Channel):
    name = "discord"

    def send(self, title, message, priority='normal', metadata=None):
        webhook = self.cfg.get('webhook') or ''
        if not webhook:
            logger.warning("discord: not configured (missing webhook URL)")
            return False

        color = 0xE67E22 if priority == 'high' else 0x3498DB
        payload = {
            'username': self.cfg.get('username') or DEFAULT_USERNAME,
            'embeds': [{
                'title': title,
                'description': message[:4096],
                'color': color,
                'timestamp': _utc_timestamp(),
            }],
        }
        try:
            self._post(webhook, json=payload)
            logger.info("discord: notification sent")
            return True
        except requests.RequestException as e:
            logger.warning("discord: failed to send notification: %s", e)
            return False


@register_channel
class TelegramChannel(Channel):
    name = "telegram"

    def send(self, title, message, priority='normal', metadata=None):
        bot_token = self.cfg.get('bot_token') or ''
        chat_id = self.cfg.get('chat_id') or ''
        if not bot_token or not chat_id:
            logger.warning("telegram: not configured (missing bot token or chat id)")
            return False

        text = f"<b>{html.escape(title)}</b>\n\n{html.escape(message)}"
        try:
            response = self._post(
                f"https://api.telegram.org/bot{bot_token}/sendMessage",
                data={'chat_id': chat_id, 'text': text, 'parse_mode': 'HTML'},
            )
            if not response.json().get('ok'):
                logger.warning("telegram: API rejected message: %s", response.text)
                return False
            logger.info("telegram: notification sent")
            return True
        except (requests.RequestException, ValueError) as e:
            logger.warning("telegram: failed to send notification: %s", e)
            return False


@register_channel
class SlackChannel(Channel):
    name = "slack"

    def send(self, title, message, priority='normal', metadata=None):
        webhook = self.cfg.get('webhook') or ''
        if not webhook:
            logger.warning("slack: not configured (missing webhook URL)")
            return False

        payload = {
            'username': self.cfg.get('username') or DEFAULT_USERNAME,
            'text': title,
            'blocks': [
                {'type': 'header', 'text': {'type': 'plain_text', 'text': title[:150]}},
                {'type': 'section', 'text': {'type': 'mrkdwn', 'text': message[:3000]}},
            ],
        }
        try:
            self._post(webhook, json=payload)
            logger.info("slack: notification sent")
            return True
        except requests.RequestException as e:
            logger.warning("slack: failed to send notification: %s", e)
            return False


@register_channel
class EmailChannel(Channel):
    """Config keys: smtp_server, smtp_port (587), from, to, username, password, starttls."""

    name = "email"

    def send(self, title, message, priority='normal', metadata=None):
        server = self.cfg.get('smtp_server') or ''
        sender = self.cfg.get('from') or ''
        recipients = [r.strip() for r in (self.cfg.get('to') or '').split(',') if r.strip()]
        if not server or not sender or not recipients:
            logger.warning("email: not configured (missing SMTP server, from, or to address)")
            return False

        msg = EmailMessage()
        msg['Subject'] = title
        msg['From'] = sender
        msg['To'] = ', '.join(recipients)
        if priority == 'high':
            msg['X-Priority'] = '1'
        msg.set_content(f"{message}\n\n---\nSent by dockcheck\n{_utc_timestamp()}\n")

        try:
            with smtplib.SMTP(server, int(self.cfg.get('smtp_port') or 587),
                              timeout=_REQUEST_TIMEOUT) as smtp:
                if self.cfg.get('starttls', True):
                    smtp.starttls()
                if self.cfg.get('username'):
                    smtp.login(self.cfg['username'], self.cfg.get('password') or '')
                smtp.send_message(msg)
            logger.info("email: notification sent")
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("email: failed to send notification: %s", e)
            return False


@register_channel
class AppriseChannel(Channel):
    """Delegates to the ``apprise`` CLI; ``url`` may hold several service URLs."""

    name = "apprise"

    def send(self, title, message, priority='normal', metadata=None):
        urls = (self.cfg.get('url') or '').split()
        if not urls:
            logger.warning("apprise: not configured (missing URL)")
            return False

        try:
            result = subprocess.run(
                ['apprise', '-t', title, '-b', message] + urls,
                capture_output=True,
                text=True,
                timeout=_SCRIPT_TIMEOUT,
            )
        except FileNotFoundError:
            logger.warning("apprise: CLI not installed (pip install apprise)")
            return False
        except subprocess.TimeoutExpired:
            logger.warning("apprise: timed out")
            return False

        if result.returncode != 0:
            logger.warning("apprise: failed to send notification: %s", (result.stderr or '').strip())
            return False
        logger.info("apprise: notification sent")
        return True


@register_channel
class CustomScriptChannel(Channel):
    """Runs an executable with the notification as JSON on stdin."""

    name = "custom"

    def send(self, title, message, priority='normal', metadata=None):
        script = self.cfg.get('script') or ''
        if not script:
            logger.warning("custom: script not configured")
            return False
        if not (os.path.isfile(script) and os.access(script, os.X_OK)):
            logger.warning("custom: script not found or not executable: %s", script)
            return False

        payload = {
            'title': title,
            'message': message,
            'priority': priority,
            'timestamp': _utc_timestamp(),
            'updates': metadata or {},
        }
        try:
            result = subprocess.run(
                [script],
                input=json.dumps(payload),
                capture_output=True,
                text=True,
                timeout=_SCRIPT_TIMEOUT,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("custom: script failed: %s", e)
            return False

        if result.returncode != 0:
            logger.warning("custom: script exited %d: %s", result.returncode, (result.stderr or '').strip())
            return False
        logger.info("custom: notification script executed")
        return True


@register_channel
class WebhookChannel(Channel):
    """POST (or PUT) a notification payload to a webhook URL.

    Config keys:
        url           (required) Webhook URL
        method        (optional) HTTP method, POST (default) or PUT
        headers       (optional) Dict of extra request headers
        body_template (optional) Python string.Template body.
                                 Available variables: $title, $message,
                                 $priority, $metadata.
                                 If omitted, the raw payload JSON is sent.
    """

    name = "webhook"

    def send(self, title, message, priority='normal', metadata=None):
        url = (self.cfg.get('url') or '').strip()
        if not url:
            logger.warning("webhook: no URL configured, skipping")
            return False

        method = (self.cfg.get('method') or 'POST').upper()
        headers: Dict[str, str] = {'Content-Type': 'application/json'}
        headers.update({str(k): str(v) for k, v in (self.cfg.get('headers') or {}).items()})

        payload = {'title': title, 'message': message, 'priority': priority,
                   'metadata': metadata or {}}
        body_template: Optional[str] = self.cfg.get('body_template')
        if body_template:
            try:
                body_str = string.Template(body_template).safe_substitute(
                    title=title,
                    message=message,
                    priority=priority,
                    metadata=json.dumps(metadata or {}),
                )
            except ValueError as e:
                logger.warning("webhook: body_template substitution failed: %s; sending raw payload", e)
                body_str = json.dumps(payload)
            data = body_str.encode('utf-8')
        else:
            data = json.dumps(payload).encode('utf-8')

        try:
            response = requests.request(method, url, data=data,
                                        headers=headers, timeout=_REQUEST_TIMEOUT)
            response.raise_for_status()
            logger.info("webhook: notification sent")
            return True
        except requests.RequestException as e:
            logger.warning("webhook: failed to send notification: %s", e)
            return False


@dataclass
class NotificationResult:
    """Per-channel outcome of one dispatch."""
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.skipped or bool(self.succeeded)


def send_notifications(notif_cfg: Optional[Dict[str, Any]], title: str, message: str,
                       priority: str = 'normal',
                       metadata: Optional[Dict[str, Any]] = None,
                       channels: Optional[Iterable[str]] = None) -> NotificationResult:
    """Dispatch one notification to every configured channel.

    Safe to call unconditionally: returns a skipped (ok) result when
    notifications are disabled.  Per-channel errors are logged, never raised.
    *channels* overrides ``notif_cfg['channels']``.
    """
    result = NotificationResult()
    if not notif_cfg or not notif_cfg.get('enabled'):
        result.skipped = True
        return result

    if channels is None:
        channels = notif_cfg.get('channels') or []
        if isinstance(channels, str):
            channels = channels.split(',')
    names = [c.strip() for c in channels if c and c.strip()]

    if not names:
        logger.warning("No notification channels configured")
        return result

    for name in names:
        channel_cls = CHANNELS.get(name)
        if channel_cls is None:
            logger.warning("Unknown notification channel: %s", name)
            result.failed.append(name)
            continue

        try:
            sent = channel_cls(notif_cfg.get(name)).send(title, message, priority, metadata or {})
        except Exception as e:
            logger.warning("%s: unexpected error: %s", name, e)
            sent = False

        (result.succeeded if sent else result.failed).append(name)

    if result.succeeded:
        logger.info("Notifications sent: %s", ', '.join(result.succeeded))
        if result.failed:
            logger.info("Some channels failed: %s", ', '.join(result.failed))
    else:
        logger.error("All notification channels failed: %s", ', '.join(result.failed))

    return result
