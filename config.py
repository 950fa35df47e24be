"""Settings: JSON schema, layered loading, and the frozen UpdateConfig value.

Precedence, lowest first: built-in defaults, the system file
(/etc/dockcheck/config.json), the user file (~/.dockcheck/config.json or an
explicit --config path), environment variables, then command-line flags.
The result is immutable and passed explicitly to every component.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import jsonschema

from errors import ConfigError
from filters import FilterSpec, split_patterns

logger = logging.getLogger(__name__)

SYSTEM_CONFIG_FILE = Path("/etc/dockcheck/config.json")
USER_CONFIG_FILE = Path.home() / ".dockcheck" / "config.json"

_string_list = {
    "oneOf": [
        {"type": "string"},
        {"type": "array", "items": {"type": "string"}},
    ]
}

NOTIFICATION_CHANNEL_NAMES = [
    "gotify", "ntfy", "discord", "telegram", "slack",
    "email", "apprise", "custom", "webhook",
]

# Configuration schema
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "check_enabled": {"type": "boolean"},
        "auto_update": {"type": "boolean"},
        "notify_only": {"type": "boolean"},
        "use_compose": {"type": "boolean"},
        "compose_file": {"type": "string"},
        "include": _string_list,
        "exclude": _string_list,
        "label_filter": {"type": "string"},
        "min_age": {"type": ["string", "integer"]},
        "backup_days": {"type": "integer", "minimum": 0},
        "auto_prune": {"type": "boolean"},
        "force_recreate": {"type": "boolean"},
        "registry_timeout": {"type": "integer", "minimum": 1},
        "check_workers": {"type": "integer", "minimum": 1, "maximum": 32},
        "regctl_path": {"type": "string"},
        "notifications": {
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "channels": _string_list,
                "gotify": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "token": {"type": "string"},
                        "priority": {"type": "integer", "minimum": 0, "maximum": 10}
                    }
                },
                "ntfy": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "topic": {"type": "string"},
                        "token": {"type": "string"},
                        "priority": {
                            "type": "string",
                            "enum": ["min", "low", "default", "high", "urgent"]
                        }
                    }
                },
                "discord": {
                    "type": "object",
                    "properties": {
                        "webhook": {"type": "string"},
                        "username": {"type": "string"}
                    }
                },
                "telegram": {
                    "type": "object",
                    "properties": {
                        "bot_token": {"type": "string"},
                        "chat_id": {"type": ["string", "integer"]}
                    }
                },
                "slack": {
                    "type": "object",
                    "properties": {
                        "webhook": {"type": "string"},
                        "username": {"type": "string"}
                    }
                },
                "email": {
                    "type": "object",
                    "properties": {
                        "smtp_server": {"type": "string"},
                        "smtp_port": {"type": "integer", "minimum": 1, "maximum": 65535},
                        "from": {"type": "string"},
                        "to": {"type": "string"},
                        "username": {"type": "string"},
                        "password": {"type": "string"},
                        "starttls": {"type": "boolean"}
                    }
                },
                "apprise": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"}
                    }
                },
                "custom": {
                    "type": "object",
                    "properties": {
                        "script": {"type": "string"}
                    }
                },
                "webhook": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "method": {"type": "string"},
                        "headers": {
                            "type": "object",
                            "additionalProperties": {"type": "string"}
                        },
                        "body_template": {"type": "string"}
                    }
                }
            }
        }
    },
    "additionalProperties": False
}


@dataclass(frozen=True)
class UpdateConfig:
    """Effective settings for one run."""
    check_enabled: bool = True
    auto_update: bool = False
    notify_only: bool = False
    use_compose: bool = True
    compose_file: str = "./docker-compose.yml"
    include: Tuple[str, ...] = ()
    exclude: Tuple[str, ...] = ()
    label_filter: str = ""
    min_age: str = ""
    backup_days: int = 7
    auto_prune: bool = True
    force_recreate: bool = False
    registry_timeout: int = 10
    check_workers: int = 1
    regctl_path: str = "regctl"
    notifications: Dict[str, Any] = field(default_factory=dict)
    # run-time switches, never read from the settings file
    dry_run: bool = False
    interactive: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UpdateConfig":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for key in ('include', 'exclude'):
            if key in values:
                values[key] = split_patterns(values[key])
        if 'min_age' in values:
            values['min_age'] = str(values['min_age'])
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        """Settings-file form (run-time switches left out)."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data.pop('dry_run')
        data.pop('interactive')
        data['include'] = list(self.include)
        data['exclude'] = list(self.exclude)
        return data

    @property
    def filter_spec(self) -> FilterSpec:
        return FilterSpec.build(self.include, self.exclude, self.label_filter, self.min_age)

    @property
    def notifications_enabled(self) -> bool:
        return bool(self.notifications.get('enabled'))

    @property
    def notify_channels(self) -> Tuple[str, ...]:
        return split_patterns(self.notifications.get('channels'))

    def override(self, **changes) -> "UpdateConfig":
        """Return a copy with every non-None value in *changes* applied."""
        changes = {k: v for k, v in changes.items() if v is not None}
        for key in ('include', 'exclude'):
            if key in changes:
                changes[key] = split_patterns(changes[key])
        return replace(self, **changes)

    def validated(self) -> "UpdateConfig":
        """Resolve conflicting settings and warn about incomplete ones."""
        config = self
        if config.auto_update and config.notify_only:
            logger.warning("Both auto_update and notify_only are enabled; notify_only takes precedence")
            config = replace(config, auto_update=False)
        if config.notifications_enabled and not config.notify_channels:
            logger.warning("Notifications enabled but no channels configured")
        return config


def _read_config_file(path: Path) -> Dict[str, Any]:
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Error parsing config file {path}: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}")

    try:
        jsonschema.validate(data, CONFIG_SCHEMA)
    except jsonschema.ValidationError as e:
        raise ConfigError(f"Configuration validation failed for {path}: {e.message}")
    return data


def load_config(config_file: Optional[str] = None,
                system_file: Path = SYSTEM_CONFIG_FILE,
                user_file: Path = USER_CONFIG_FILE) -> UpdateConfig:
    """Load and merge settings files into an UpdateConfig.

    An explicitly requested *config_file* that does not exist is an error;
    a missing default user file just means defaults.

    Raises:
        ConfigError: on unreadable, malformed or invalid files
    """
    merged: Dict[str, Any] = {}

    if system_file.is_file():
        merged.update(_read_config_file(system_file))
        logger.info(f"Loaded system configuration from {system_file}")

    path = Path(config_file) if config_file else user_file
    if path.is_file():
        user_data = _read_config_file(path)
        notifications = {**merged.get('notifications', {}), **user_data.get('notifications', {})}
        merged.update(user_data)
        if notifications:
            merged['notifications'] = notifications
        logger.info(f"Loaded configuration from {path}")
    elif config_file:
        raise ConfigError(f"Configuration file not found: {config_file}")
    else:
        logger.info("No user configuration file found, using defaults")

    env_compose = os.environ.get('COMPOSE_FILE', '').strip()
    if env_compose:
        merged['compose_file'] = env_compose

    return UpdateConfig.from_dict(merged)


def save_config(config: UpdateConfig, path: Path = USER_CONFIG_FILE) -> Path:
    """Atomically write *config* with owner-only permissions."""
    data = config.to_dict()
    jsonschema.validate(data, CONFIG_SCHEMA)

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix('.tmp')
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    os.fchmod(fd, 0o600)
    with os.fdopen(fd, 'w') as f:
        json.dump(data, f, indent=2)
    tmp.replace(path)
    logger.info(f"Configuration saved to {path}")
    return path
