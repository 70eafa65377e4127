import logging
from typing import Dict, Iterable, List, Optional

from notify_core.mail_utils import MailHookAction
from notify_core.models import Action, ActionContext, ActionHandler, Config, UpdateEvent
from notify_core.webhook_utils import WebhookAction


class ActionRegistry:
    """Maps action kinds to notification handlers.

    The built-in mail and webhook handlers are registered on construction;
    further kinds can be added with `register` without touching the
    orchestrator. Handler state (cached SMTP connections) lives as long as
    the registry does.
    """

    def __init__(self, handlers: Optional[Iterable[ActionHandler]] = None, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._handlers: Dict[str, ActionHandler] = {}
        if handlers is None:
            handlers = [MailHookAction(), WebhookAction()]
        for handler in handlers:
            self.register(handler)

    def register(self, handler: ActionHandler) -> None:
        self._handlers[handler.type] = handler

    def get_handler(self, kind: str) -> Optional[ActionHandler]:
        return self._handlers.get(kind)

    def get_all_handlers(self) -> List[ActionHandler]:
        return list(self._handlers.values())

    def validate_all(self, config: Config) -> bool:
        """Check every configured action resolves to a handler and a backend instance."""
        for job in config.notify_services:
            for action in job.actions:
                handler = self.get_handler(action.type)
                if handler is None:
                    self.logger.error(f"Unknown action type '{action.type}' configured for {job.image.identity}")
                    return False
                if not handler.validate_instance(action, config):
                    self.logger.error(
                        f"Action '{action.type}' for {job.image.identity} references undefined instance '{action.instance}'"
                    )
                    return False
        return True

    def dispatch(self, action: Action, event: UpdateEvent, context: ActionContext) -> bool:
        """Run one action for an update event. Returns True if it was delivered."""
        handler = self.get_handler(action.type)
        if handler is None:
            context.logger.error(f"Unknown action type '{action.type}', skipping")
            return False
        try:
            return handler.execute(action, event, context) is not False
        except Exception as e:
            context.logger.error(
                f"Action '{action.type}' ({action.instance}) failed for {event.image_name}: {e}",
                extra={'image': event.identity, 'action': action.type, 'instance': action.instance},
            )
            return False

    def reset(self) -> None:
        for handler in self._handlers.values():
            handler.reset()
