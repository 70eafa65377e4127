import json
import logging

import pytest
from jsonschema import ValidationError

from notify_core import config_utils as cu
from notify_core.models import ConfigError, TrackedImage


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ('CHECK_INTERVAL', 'DOCKERHUB_USERNAME', 'DOCKERHUB_PASSWORD'):
        monkeypatch.delenv(var, raising=False)


def base_config():
    return {
        'notify_services': [
            {
                'image': 'nginx:latest',
                'actions': [
                    {'type': 'mail_hook', 'instance': 'main', 'recipient': 'ops@example.com'},
                    {'type': 'web_hook', 'instance': 'chat'},
                ],
            },
            {'image': 'bitnami/redis', 'actions': [{'type': 'web_hook', 'instance': 'chat'}]},
        ],
        'smtp_servers': {
            'main': {'sender_name': 'Docker Notify', 'sender_address': 'notify@example.com'},
        },
        'webhooks': {
            'chat': {'url': 'https://chat.example.com/hook', 'body': {'text': '$msg'}},
        },
    }


@pytest.mark.parametrize('image, expected', [
    ('nginx', TrackedImage('library', 'nginx', None)),
    ('nginx:1.25', TrackedImage('library', 'nginx', '1.25')),
    ('bitnami/redis', TrackedImage('bitnami', 'redis', None)),
    ('bitnami/redis:7.2', TrackedImage('bitnami', 'redis', '7.2')),
])
def test_parse_image_string(image, expected):
    assert cu.parse_image_string(image) == expected


def test_parse_image_string_rejects_registry_hosts():
    with pytest.raises(ConfigError):
        cu.parse_image_string('ghcr.io/owner/app:1')


def test_tracked_image_identity_and_display():
    official = cu.parse_image_string('nginx:latest')
    assert official.identity == 'library/nginx:latest'
    assert official.display_name == 'nginx:latest'
    assert official.hub_url == 'https://hub.docker.com/r/_/nginx/tags'

    user = cu.parse_image_string('bitnami/redis')
    assert user.identity == 'bitnami/redis'
    assert user.display_name == 'bitnami/redis'
    assert user.hub_url == 'https://hub.docker.com/r/bitnami/redis/tags'


def test_resolve_env_vars(monkeypatch):
    monkeypatch.setenv('SMTP_PASS', 's3cret')
    resolved = cu.resolve_env_vars({
        'password': '${SMTP_PASS}',
        'nested': {'value': 'x-${SMTP_PASS}'},
        'items': ['${SMTP_PASS}', 3],
        'unknown': '${NOT_SET_ANYWHERE_123}',
        'port': 25,
    })
    assert resolved == {
        'password': 's3cret',
        'nested': {'value': 'x-s3cret'},
        'items': ['s3cret', 3],
        'unknown': '${NOT_SET_ANYWHERE_123}',
        'port': 25,
    }


def test_build_config_applies_defaults():
    config = cu.build_config(base_config())

    assert config.check_interval == 60
    assert not config.has_credentials
    assert [job.image.identity for job in config.notify_services] == ['library/nginx:latest', 'bitnami/redis']
    assert [a.type for a in config.notify_services[0].actions] == ['mail_hook', 'web_hook']
    assert config.notify_services[0].actions[0].recipient == 'ops@example.com'

    smtp = config.smtp_servers['main']
    assert (smtp.host, smtp.port, smtp.secure) == ('127.0.0.1', 25, True)
    hook = config.webhooks['chat']
    assert hook.method == 'POST'
    assert hook.headers is None
    assert hook.body == {'text': '$msg'}


def test_build_config_env_overrides(monkeypatch):
    monkeypatch.setenv('CHECK_INTERVAL', '15')
    monkeypatch.setenv('DOCKERHUB_USERNAME', 'someone')
    monkeypatch.setenv('DOCKERHUB_PASSWORD', 'pw')
    raw = base_config()
    raw['check_interval'] = 30

    config = cu.build_config(raw)

    assert config.check_interval == 15
    assert config.has_credentials
    assert config.dockerhub_username == 'someone'


def test_mail_action_requires_recipient():
    raw = base_config()
    del raw['notify_services'][0]['actions'][0]['recipient']
    with pytest.raises(ValidationError):
        cu.build_config(raw)


def test_invalid_recipient_email_rejected():
    raw = base_config()
    raw['notify_services'][0]['actions'][0]['recipient'] = 'not-an-email'
    with pytest.raises(ValidationError):
        cu.build_config(raw)


def test_empty_notify_services_rejected():
    raw = base_config()
    raw['notify_services'] = []
    with pytest.raises(ValidationError):
        cu.build_config(raw)


def test_invalid_webhook_method_rejected():
    raw = base_config()
    raw['webhooks']['chat']['method'] = 'PATCH'
    with pytest.raises(ValidationError):
        cu.build_config(raw)


def test_image_with_registry_host_rejected():
    raw = base_config()
    raw['notify_services'][0]['image'] = 'ghcr.io/owner/app:1'
    with pytest.raises(ValidationError):
        cu.build_config(raw)


def test_load_config_reads_file(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps(base_config()))

    config = cu.load_config(str(path), logging.getLogger('test'))
    assert len(config.notify_services) == 2


def test_load_config_unparsable_file(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text('{ not json')
    with pytest.raises(ConfigError):
        cu.load_config(str(path), logging.getLogger('test'))


def test_create_default_config_is_loadable(tmp_path):
    path = tmp_path / 'config' / 'config.json'
    cu.create_default_config(str(path), logging.getLogger('test'))

    config = cu.load_config(str(path), logging.getLogger('test'))
    assert config.notify_services[0].image.identity == 'library/nginx:latest'
