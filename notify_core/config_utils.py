import json
import os
import re
from typing import Any, Dict, List

from jsonschema import FormatChecker, validate as jsonschema_validate, ValidationError

from notify_core.models import (
    OFFICIAL_NAMESPACE,
    Action,
    Config,
    ConfigError,
    NotificationJob,
    SmtpServerConfig,
    TrackedImage,
    WebhookConfig,
)

DEFAULT_CONFIG_FILE = './config/config.json'
DEFAULT_CHECK_INTERVAL = 60  # minutes

_BODY_TYPES = ['object', 'array', 'string', 'null']

ACTION_SCHEMA = {
    'type': 'object',
    'required': ['type', 'instance'],
    'properties': {
        'type': {'type': 'string', 'minLength': 1},
        'instance': {'type': 'string', 'minLength': 1},
        'recipient': {'type': 'string', 'format': 'email'},
    },
    'if': {'properties': {'type': {'const': 'mail_hook'}}},
    'then': {'required': ['recipient']},
}

SMTP_SERVER_SCHEMA = {
    'type': 'object',
    'required': ['sender_name', 'sender_address'],
    'properties': {
        'host': {'type': 'string', 'minLength': 1},
        'port': {'type': 'integer', 'minimum': 1, 'maximum': 65535},
        'secure': {'type': 'boolean'},
        'sender_name': {'type': 'string', 'minLength': 3},
        'sender_address': {'type': 'string', 'format': 'email'},
        'username': {'type': 'string'},
        'password': {'type': 'string'},
    },
}

WEBHOOK_SCHEMA = {
    'type': 'object',
    'required': ['url'],
    'properties': {
        'url': {'type': 'string', 'pattern': r'^https?://'},
        'method': {'type': 'string', 'enum': ['POST', 'GET', 'PUT', 'DELETE']},
        'headers': {'type': _BODY_TYPES},
        'body': {'type': _BODY_TYPES},
    },
}

CONFIG_SCHEMA = {
    'type': 'object',
    'properties': {
        'dockerhub_username': {'type': 'string'},
        'dockerhub_password': {'type': 'string'},
        'check_interval': {'type': 'integer', 'minimum': 1},
        'notify_services': {
            'type': 'array',
            'minItems': 1,
            'items': {
                'type': 'object',
                'required': ['image', 'actions'],
                'properties': {
                    'image': {'type': 'string', 'pattern': r'^[^/:\s]+(/[^/:\s]+)?(:[^/:\s]+)?$'},
                    'actions': {'type': 'array', 'minItems': 1, 'items': ACTION_SCHEMA},
                },
            },
        },
        'smtp_servers': {'type': 'object', 'additionalProperties': SMTP_SERVER_SCHEMA},
        'webhooks': {'type': 'object', 'additionalProperties': WEBHOOK_SCHEMA},
    },
    'required': ['notify_services'],
}


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ${VAR} environment variables in strings, dicts and lists.

    Unknown variables are left as written.
    """

    def replace_env_var(match):
        var_name = match.group(1)
        return os.getenv(var_name, match.group(0))

    if isinstance(value, str):
        return re.sub(r"\$\{([^}]+)\}", replace_env_var, value)
    if isinstance(value, dict):
        return {key: resolve_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]
    return value


def parse_image_string(image: str) -> TrackedImage:
    """Parse `[namespace/]name[:tag]`; a bare name lives in the official namespace."""
    parts = image.strip().split('/')
    if len(parts) > 2:
        raise ConfigError(f"Unsupported image reference '{image}': expected [namespace/]name[:tag]")
    namespace = parts[0] if len(parts) == 2 else OFFICIAL_NAMESPACE
    name, _, tag = parts[-1].partition(':')
    if not namespace or not name:
        raise ConfigError(f"Invalid image reference '{image}'")
    return TrackedImage(namespace=namespace, name=name, tag=tag or None)


def _build_jobs(services: List[Dict[str, Any]]) -> List[NotificationJob]:
    jobs: List[NotificationJob] = []
    for service in services:
        actions = [
            Action(type=a['type'], instance=a['instance'], recipient=a.get('recipient'))
            for a in service['actions']
        ]
        jobs.append(
            NotificationJob(
                image=parse_image_string(service['image']),
                actions=actions,
                original_image=service['image'],
            )
        )
    return jobs


def build_config(raw: Dict[str, Any]) -> Config:
    """Validate a raw config dict and turn it into a Config.

    Raises jsonschema.ValidationError for schema violations and ConfigError
    for unparsable image references.
    """
    raw = resolve_env_vars(raw)
    jsonschema_validate(raw, CONFIG_SCHEMA, format_checker=FormatChecker())

    check_interval = raw.get('check_interval', DEFAULT_CHECK_INTERVAL)
    env_ci = os.getenv('CHECK_INTERVAL')
    if env_ci is not None:
        try:
            check_interval = max(1, int(env_ci))
        except ValueError:
            pass

    smtp_servers = {
        name: SmtpServerConfig(
            host=cfg.get('host', '127.0.0.1'),
            port=cfg.get('port', 25),
            secure=cfg.get('secure', True),
            sender_name=cfg['sender_name'],
            sender_address=cfg['sender_address'],
            username=cfg.get('username'),
            password=cfg.get('password'),
        )
        for name, cfg in raw.get('smtp_servers', {}).items()
    }
    webhooks = {
        name: WebhookConfig(
            url=cfg['url'],
            method=cfg.get('method', 'POST'),
            headers=cfg.get('headers'),
            body=cfg.get('body'),
        )
        for name, cfg in raw.get('webhooks', {}).items()
    }
    return Config(
        notify_services=_build_jobs(raw['notify_services']),
        check_interval=check_interval,
        dockerhub_username=os.getenv('DOCKERHUB_USERNAME') or raw.get('dockerhub_username'),
        dockerhub_password=os.getenv('DOCKERHUB_PASSWORD') or raw.get('dockerhub_password'),
        smtp_servers=smtp_servers,
        webhooks=webhooks,
    )


def load_config(config_file: str, logger) -> Config:
    """Load and validate the JSON configuration file."""
    try:
        with open(config_file, 'r') as f:
            raw = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Failed to read configuration file {config_file}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Configuration file {config_file} must contain a JSON object")
    try:
        config = build_config(raw)
    except ValidationError as e:
        logger.error(f"Configuration validation error: {e.message}")
        raise
    logger.info(f"Loaded configuration for {len(config.notify_services)} images from {config_file}")
    return config


def create_default_config(config_file: str, logger) -> str:
    """Create a default config file. Returns the path written."""
    default_config = {
        "check_interval": DEFAULT_CHECK_INTERVAL,
        "notify_services": [
            {
                "image": "nginx:latest",
                "actions": [{"type": "web_hook", "instance": "example"}],
            }
        ],
        "webhooks": {
            "example": {
                "url": "https://example.com/hook",
                "method": "POST",
                "body": {"text": "$msg"},
            }
        },
    }
    config_dir = os.path.dirname(config_file) or '.'
    os.makedirs(config_dir, exist_ok=True)
    with open(config_file, 'w') as f:
        json.dump(default_config, f, indent=2)
    logger.info(f"Created default configuration file: {config_file}")
    logger.info("Please update the configuration with your images and notification targets")
    return config_file
