import json
import os
import time
import logging
from typing import Dict, Optional

from notify_core.models import StateEntry

DEFAULT_STATE_FILE = './config/cache.json'


class StateStore:
    """Last-seen timestamps per tracked image, kept in a JSON file.

    The file is a disposable cache: a missing or corrupt file resets every
    image to a fresh baseline instead of failing the cycle.
    """

    def __init__(self, state_file: Optional[str] = None, logger: Optional[logging.Logger] = None):
        self.state_file = state_file or os.getenv('STATE_FILE', DEFAULT_STATE_FILE)
        self.logger = logger or logging.getLogger(__name__)

    def load(self) -> Dict[str, StateEntry]:
        if not os.path.exists(self.state_file):
            try:
                self._write('{}')
                self.logger.info(f"Created empty state file: {self.state_file}")
            except OSError as e:
                self.logger.warning(f"Could not create state file {self.state_file}: {e}")
            return {}
        try:
            with open(self.state_file, 'r') as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            self.logger.warning(f"State file {self.state_file} is corrupted or unreadable, starting from empty state: {e}")
            return {}
        if not isinstance(raw, dict):
            self.logger.warning(f"State file {self.state_file} does not hold a JSON object, starting from empty state")
            return {}

        state: Dict[str, StateEntry] = {}
        for key, data in raw.items():
            try:
                state[key] = StateEntry.from_dict(data)
            except (KeyError, TypeError, AttributeError) as e:
                self.logger.warning(f"Skipping malformed state entry {key!r}: {e}")
        return state

    def save(self, state: Dict[str, StateEntry]) -> None:
        """Replace the whole state file with `state`."""
        data = json.dumps({key: entry.to_dict() for key, entry in state.items()}, indent=2)
        self._write(data)

    def _write(self, data: str) -> None:
        state_dir = os.path.dirname(self.state_file) or '.'
        os.makedirs(state_dir, exist_ok=True)
        tmp_path = os.path.join(state_dir, f'.tmp_state_{os.getpid()}_{int(time.time() * 1000)}.json')
        try:
            with open(tmp_path, 'w') as tf:
                tf.write(data)
                tf.flush()
                os.fsync(tf.fileno())
            os.replace(tmp_path, self.state_file)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
