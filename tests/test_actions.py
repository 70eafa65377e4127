import logging

from notify_core.config_utils import parse_image_string
from notify_core.mail_utils import MAIL_HOOK, MailHookAction
from notify_core.models import (
    Action,
    ActionContext,
    ActionHandler,
    Config,
    NotificationJob,
    SmtpServerConfig,
    UpdateEvent,
    WebhookConfig,
)
from notify_core.notify_utils import ActionRegistry
from notify_core.webhook_utils import WEB_HOOK, WebhookAction


class RecordingHandler(ActionHandler):
    type = 'record'

    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail
        self.resets = 0

    def execute(self, action, event, context):
        self.calls.append((action, event))
        if self.fail:
            raise RuntimeError('boom')
        return True

    def validate_instance(self, action, config):
        return True

    def reset(self):
        self.resets += 1


def make_event(image='nginx:latest'):
    job = NotificationJob(image=parse_image_string(image), actions=[], original_image=image)
    return UpdateEvent(identity=job.image.identity, last_updated='2024-01-02T00:00:00Z', was_updated=True, job=job)


def make_config(actions, smtp_servers=None, webhooks=None):
    job = NotificationJob(image=parse_image_string('nginx'), actions=actions, original_image='nginx')
    return Config(notify_services=[job], smtp_servers=smtp_servers or {}, webhooks=webhooks or {})


def test_builtin_handlers_registered():
    registry = ActionRegistry()
    assert isinstance(registry.get_handler(MAIL_HOOK), MailHookAction)
    assert isinstance(registry.get_handler(WEB_HOOK), WebhookAction)
    assert sorted(h.type for h in registry.get_all_handlers()) == [MAIL_HOOK, WEB_HOOK]


def test_register_custom_handler():
    registry = ActionRegistry()
    handler = RecordingHandler()
    registry.register(handler)
    assert registry.get_handler('record') is handler
    assert registry.get_handler('unknown') is None


def test_dispatch_calls_matching_handler():
    handler = RecordingHandler()
    registry = ActionRegistry(handlers=[handler])
    action = Action(type='record', instance='x')
    event = make_event()
    context = ActionContext(config=Config(), logger=logging.getLogger('test'))

    assert registry.dispatch(action, event, context) is True
    assert handler.calls == [(action, event)]


def test_dispatch_unknown_kind_is_noop(caplog):
    registry = ActionRegistry(handlers=[])
    context = ActionContext(config=Config(), logger=logging.getLogger('test'))

    with caplog.at_level(logging.ERROR):
        delivered = registry.dispatch(Action(type='carrier_pigeon', instance='x'), make_event(), context)

    assert delivered is False
    assert "Unknown action type 'carrier_pigeon'" in caplog.text


def test_dispatch_contains_handler_exceptions(caplog):
    failing = RecordingHandler(fail=True)
    registry = ActionRegistry(handlers=[failing])
    context = ActionContext(config=Config(), logger=logging.getLogger('test'))

    with caplog.at_level(logging.ERROR):
        results = [
            registry.dispatch(Action(type='record', instance='x'), make_event(), context),
            registry.dispatch(Action(type='record', instance='y'), make_event(), context),
        ]

    assert results == [False, False]

    assert len(failing.calls) == 2
    assert 'boom' in caplog.text


def test_validate_all_accepts_resolvable_actions():
    config = make_config(
        [Action(WEB_HOOK, 'hook'), Action(MAIL_HOOK, 'smtp', recipient='a@example.com')],
        smtp_servers={'smtp': SmtpServerConfig(sender_name='Notify', sender_address='n@example.com')},
        webhooks={'hook': WebhookConfig(url='https://example.com')},
    )
    assert ActionRegistry().validate_all(config) is True


def test_validate_all_rejects_undefined_webhook_instance():
    config = make_config([Action(WEB_HOOK, 'missing')], webhooks={'hook': WebhookConfig(url='https://example.com')})
    assert ActionRegistry().validate_all(config) is False


def test_validate_all_rejects_undefined_smtp_instance():
    config = make_config([Action(MAIL_HOOK, 'missing', recipient='a@example.com')])
    assert ActionRegistry().validate_all(config) is False


def test_validate_all_rejects_unknown_kind():
    config = make_config([Action('unknownType', 'test')])
    assert ActionRegistry().validate_all(config) is False


def test_validate_instance_checks_kind():
    config = make_config([], webhooks={'hook': WebhookConfig(url='https://example.com')})
    assert WebhookAction().validate_instance(Action(MAIL_HOOK, 'hook', recipient='a@example.com'), config) is False


def test_reset_resets_every_handler():
    first, second = RecordingHandler(), RecordingHandler()
    second.type = 'record2'
    registry = ActionRegistry(handlers=[first, second])

    registry.reset()

    assert (first.resets, second.resets) == (1, 1)
