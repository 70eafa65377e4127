from typing import Any, Dict

import requests

from notify_core.models import Action, ActionContext, ActionHandler, Config, UpdateEvent

WEB_HOOK = 'web_hook'
MESSAGE_PLACEHOLDER = '$msg'
WEBHOOK_TIMEOUT_SECONDS = 15


def replace_message_placeholders(body: Any, message: str) -> Any:
    """Substitute `$msg` in a webhook body.

    Strings are substituted directly; for objects and arrays only top-level
    string values are touched. Anything else, including None, is returned
    unchanged.
    """
    if body is None:
        return None
    if isinstance(body, str):
        return body.replace(MESSAGE_PLACEHOLDER, message)
    if isinstance(body, list):
        return [item.replace(MESSAGE_PLACEHOLDER, message) if isinstance(item, str) else item for item in body]
    if isinstance(body, dict):
        return {
            key: value.replace(MESSAGE_PLACEHOLDER, message) if isinstance(value, str) else value
            for key, value in body.items()
        }
    return body


class WebhookAction(ActionHandler):
    type = WEB_HOOK

    def __init__(self, timeout: int = WEBHOOK_TIMEOUT_SECONDS):
        self.timeout = timeout

    def execute(self, action: Action, event: UpdateEvent, context: ActionContext) -> bool:
        webhook_config = context.config.webhooks.get(action.instance)
        if webhook_config is None:
            context.logger.error(f"Webhook configuration '{action.instance}' not found")
            return False

        body = replace_message_placeholders(webhook_config.body, event.message)
        headers: Dict[str, str] = {}
        if isinstance(webhook_config.headers, dict):
            headers.update({str(k): str(v) for k, v in webhook_config.headers.items()})

        kwargs: Dict[str, Any] = {'headers': headers, 'timeout': self.timeout}
        if isinstance(body, (dict, list)):
            kwargs['json'] = body
        elif isinstance(body, str) and body:
            kwargs['data'] = body.encode('utf-8')

        try:
            resp = requests.request(webhook_config.method, webhook_config.url, **kwargs)
            resp.raise_for_status()
        except requests.RequestException as e:
            context.logger.error(
                f"Webhook '{action.instance}' execution failed: {e}",
                extra={'image': event.identity, 'instance': action.instance},
            )
            return False
        context.logger.info(
            f"Webhook '{action.instance}' executed for {event.image_name} (status {resp.status_code})",
            extra={'image': event.identity},
        )
        return True

    def validate_instance(self, action: Action, config: Config) -> bool:
        if action.type != WEB_HOOK:
            return False
        return action.instance in config.webhooks
