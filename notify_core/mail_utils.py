import smtplib
import ssl
from email.message import EmailMessage
from email.utils import formataddr
from typing import Dict

from notify_core.models import Action, ActionContext, ActionHandler, Config, SmtpServerConfig, UpdateEvent

MAIL_HOOK = 'mail_hook'
SMTP_TIMEOUT_SECONDS = 20


def build_message(smtp_config: SmtpServerConfig, recipient: str, event: UpdateEvent) -> EmailMessage:
    msg = EmailMessage()
    msg['From'] = formataddr((smtp_config.sender_name, smtp_config.sender_address))
    msg['To'] = recipient
    msg['Subject'] = f"Docker image '{event.image_name}' updated"
    msg.set_content(event.message)
    return msg


class MailHookAction(ActionHandler):
    """Send update notifications by email.

    One SMTP connection is kept per configured server instance and reused
    across cycles. Each send first checks the connection with NOOP and
    reconnects once if the server dropped it.
    """
    type = MAIL_HOOK

    def __init__(self, timeout: int = SMTP_TIMEOUT_SECONDS):
        self.timeout = timeout
        self._transports: Dict[str, smtplib.SMTP] = {}

    def execute(self, action: Action, event: UpdateEvent, context: ActionContext) -> bool:
        smtp_config = context.config.smtp_servers.get(action.instance)
        if smtp_config is None:
            context.logger.error(f"SMTP server configuration '{action.instance}' not found")
            return False
        if not action.recipient:
            context.logger.error(f"Mail action for instance '{action.instance}' has no recipient")
            return False

        msg = build_message(smtp_config, action.recipient, event)
        try:
            server = self._verified_transport(action.instance, smtp_config)
            server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            context.logger.error(
                f"Failed to send notification mail via '{action.instance}': {e}",
                extra={'image': event.identity, 'instance': action.instance},
            )
            self._discard(action.instance)
            return False
        context.logger.info(
            f"Notification mail sent to {action.recipient} for {event.image_name}",
            extra={'image': event.identity},
        )
        return True

    def validate_instance(self, action: Action, config: Config) -> bool:
        if action.type != MAIL_HOOK:
            return False
        return action.instance in config.smtp_servers

    def reset(self) -> None:
        for instance in list(self._transports):
            self._discard(instance)

    def _verified_transport(self, instance: str, smtp_config: SmtpServerConfig) -> smtplib.SMTP:
        server = self._transports.get(instance)
        if server is not None:
            try:
                server.noop()
                return server
            except (smtplib.SMTPException, OSError):
                self._discard(instance)
        server = self._connect(smtp_config)
        self._transports[instance] = server
        server.noop()
        return server

    def _connect(self, smtp_config: SmtpServerConfig) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if smtp_config.secure:
            server = smtplib.SMTP_SSL(smtp_config.host, smtp_config.port, context=context, timeout=self.timeout)
        else:
            server = smtplib.SMTP(smtp_config.host, smtp_config.port, timeout=self.timeout)
            server.ehlo()
            if server.has_extn('starttls'):
                server.starttls(context=context)
                server.ehlo()
        if smtp_config.username and smtp_config.password:
            server.login(smtp_config.username, smtp_config.password)
        return server

    def _discard(self, instance: str) -> None:
        server = self._transports.pop(instance, None)
        if server is None:
            return
        try:
            server.quit()
        except (smtplib.SMTPException, OSError):
            server.close()
