import json
import logging
from datetime import datetime, timezone

# LogRecord attributes passed through `extra=` that are copied into the payload
CONTEXT_FIELDS = ('image', 'action', 'instance')


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with image/action context when the caller supplied it."""

    def format(self, record):
        payload = {
            'ts': datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'msg': record.getMessage(),
            'logger': record.name,
            'thread': record.threadName,
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(payload)
