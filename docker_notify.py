#!/usr/bin/env python3
"""
Docker Notify
Watches Docker Hub repositories and tags, and sends mail or webhook
notifications when a tracked image has been updated since the last check.
"""

import os
import re
import sys
import time
import signal
import logging
import argparse
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Dict, List, Optional

from dotenv import load_dotenv
from jsonschema import ValidationError

from notify_core.logging_utils import JSONFormatter
from notify_core import config_utils as cu
from notify_core import metrics_utils as mu
from notify_core.models import (
    ActionContext,
    Config,
    ConfigError,
    NotificationJob,
    RegistryError,
    RepositoryNotFoundError,
    StateEntry,
    TagNotFoundError,
    UpdateEvent,
)
from notify_core.notify_utils import ActionRegistry
from notify_core.registry_utils import DockerHubClient
from notify_core.state_utils import StateStore

EXIT_CONFIG_ERROR = 1
EXIT_VALIDATION_ERROR = 2
EXIT_UNDEFINED_ACTION = 3

_FRACTION_RE = re.compile(r'\.(\d+)')


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware datetime, or None if malformed."""
    if not isinstance(value, str) or not value:
        return None
    try:
        # fromisoformat before 3.11 only takes 3 or 6 fractional digits
        text = _FRACTION_RE.sub(lambda m: '.' + m.group(1)[:6].ljust(6, '0'), value.strip(), count=1)
        dt = datetime.fromisoformat(text.replace('Z', '+00:00'))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def is_newer(previous: str, current: str) -> bool:
    """True iff both timestamps parse and `current` is a later instant."""
    prev_dt = parse_timestamp(previous)
    cur_dt = parse_timestamp(current)
    if prev_dt is None or cur_dt is None:
        return False
    return cur_dt > prev_dt


class DockerNotify:
    """Main Docker Notify agent."""

    def __init__(self, config_file: str = None, state_file: str = None):
        if config_file is None:
            config_file = os.getenv('CONFIG_FILE', cu.DEFAULT_CONFIG_FILE)
        self.config_file = config_file
        self.config: Optional[Config] = None
        try:
            self.max_workers = max(1, int(os.getenv('MAX_WORKERS', '8')))
        except ValueError:
            self.max_workers = 8
        self._stop_event = threading.Event()
        self.setup_logging()
        self.load_config()
        self.registry_client = DockerHubClient(logger=self.logger, max_workers=self.max_workers)
        self.state_store = StateStore(state_file, self.logger)
        self.action_registry = ActionRegistry(logger=self.logger)
        self.validate_actions()
        self.init_metrics()

    def setup_logging(self):
        """Configure logging with proper formatting."""
        log_level = os.getenv('LOG_LEVEL', 'INFO').upper()
        handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
        log_dir = os.getenv('LOG_DIR')
        if log_dir:
            try:
                os.makedirs(log_dir, exist_ok=True)
                handlers.append(logging.FileHandler(os.path.join(log_dir, 'docker_notify.log')))
            except OSError as e:
                print(f"Cannot write logs to {log_dir}: {e}", file=sys.stderr)

        logging.basicConfig(level=getattr(logging, log_level, logging.INFO), handlers=handlers)
        fmt = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
        if os.getenv('LOG_FORMAT', 'plain').lower() == 'json':
            fmt = JSONFormatter()
        for h in logging.getLogger().handlers:
            h.setFormatter(fmt)
        self.logger = logging.getLogger(__name__)

    def init_metrics(self):
        m = mu.init_metrics(self.logger)
        self.metrics_enabled = m['enabled']
        self.counter_checks = m['checks']
        self.counter_check_failures = m['check_failures']
        self.counter_updates = m['updates']
        self.counter_notification_failures = m['notification_failures']

    def load_config(self):
        """Load configuration, exiting with a distinct status per failure."""
        if not os.path.exists(self.config_file):
            self.logger.error(f"Configuration file not found: {self.config_file}")
            try:
                cu.create_default_config(self.config_file, self.logger)
            except OSError as e:
                self.logger.error(f"Could not create default configuration: {e}")
            sys.exit(EXIT_CONFIG_ERROR)
        try:
            self.config = cu.load_config(self.config_file, self.logger)
        except ValidationError:
            sys.exit(EXIT_VALIDATION_ERROR)
        except ConfigError as e:
            self.logger.error(f"Invalid configuration file: {e}")
            sys.exit(EXIT_CONFIG_ERROR)

    def validate_actions(self):
        if not self.action_registry.validate_all(self.config):
            self.logger.error("Configuration references undefined action instances")
            sys.exit(EXIT_UNDEFINED_ACTION)

    def _inc(self, counter_name: str):
        counter = getattr(self, counter_name, None)
        if counter:
            counter.inc()

    def authenticate(self) -> Optional[str]:
        """Obtain a registry token for this cycle, or None to run unauthenticated."""
        if not self.config.has_credentials:
            return None
        try:
            return self.registry_client.authenticate(self.config.dockerhub_username, self.config.dockerhub_password)
        except RegistryError:
            self.logger.warning("Failed to obtain Docker Hub token, proceeding without authentication")
            return None

    def fetch_last_updated(self, job: NotificationJob, token: Optional[str]) -> str:
        image = job.image
        if image.tag:
            tags = self.registry_client.fetch_all_tags(image.namespace, image.name, token)
            tag_info = next((t for t in tags if isinstance(t, dict) and t.get('name') == image.tag), None)
            if tag_info is None:
                raise TagNotFoundError(f"Tag '{image.tag}' not found in {image.namespace}/{image.name}")
            last_updated = tag_info.get('last_updated')
        else:
            last_updated = self.registry_client.fetch_repository(image.namespace, image.name, token).get('last_updated')
        if not isinstance(last_updated, str) or not last_updated:
            raise RegistryError(f"No last_updated timestamp returned for {image.identity}")
        return last_updated

    def check_image(self, job: NotificationJob, previous: Optional[StateEntry], token: Optional[str]) -> Optional[UpdateEvent]:
        """Check one tracked image; returns None when it could not be checked."""
        identity = job.image.identity
        self._inc('counter_checks')
        try:
            last_updated = self.fetch_last_updated(job, token)
        except (RepositoryNotFoundError, TagNotFoundError) as e:
            self.logger.error(f"Skipping {identity}: {e}", extra={'image': identity})
            self._inc('counter_check_failures')
            return None
        except RegistryError as e:
            self.logger.error(f"Failed to check {identity}: {e}", extra={'image': identity})
            self._inc('counter_check_failures')
            return None

        was_updated = False
        if previous is not None:
            if parse_timestamp(previous.last_updated) is None or parse_timestamp(last_updated) is None:
                self.logger.warning(
                    f"Cannot compare timestamps for {identity} "
                    f"({previous.last_updated!r} vs {last_updated!r}); treating as not updated",
                    extra={'image': identity},
                )
            else:
                was_updated = is_newer(previous.last_updated, last_updated)
        return UpdateEvent(identity=identity, last_updated=last_updated, was_updated=was_updated, job=job)

    def check_for_updates(self) -> List[UpdateEvent]:
        """Run one full cycle: fetch, diff, persist, notify."""
        token = self.authenticate()
        self.logger.info("Checking for updated repositories")
        previous_state = self.state_store.load()
        jobs = self.config.notify_services

        events: List[UpdateEvent] = []
        with ThreadPoolExecutor(max_workers=max(1, min(self.max_workers, len(jobs)))) as pool:
            futures = []
            for job in jobs:
                self.logger.debug(f"Checking image {job.image.identity}")
                futures.append((job, pool.submit(self.check_image, job, previous_state.get(job.image.identity), token)))
            for job, future in futures:
                try:
                    event = future.result()
                except Exception as e:
                    self.logger.error(
                        f"Unexpected error checking {job.image.identity}: {e}",
                        exc_info=True,
                        extra={'image': job.image.identity},
                    )
                    self._inc('counter_check_failures')
                    continue
                if event is not None:
                    events.append(event)

        new_state: Dict[str, StateEntry] = {event.identity: event.to_state_entry() for event in events}
        try:
            self.state_store.save(new_state)
        except OSError as e:
            self.logger.error(f"Failed to write state file {self.state_store.state_file}: {e}")

        updated = [event for event in events if event.was_updated]
        if not updated:
            self.logger.info("No updates found")
            return events

        self.logger.info(f"Updates detected: {len(updated)}")
        context = ActionContext(config=self.config, logger=self.logger)
        for event in updated:
            self._inc('counter_updates')
            self.logger.info(f"Image {event.image_name} updated at {event.last_updated}", extra={'image': event.identity})
            for action in event.job.actions:
                if not self.action_registry.dispatch(action, event, context):
                    self._inc('counter_notification_failures')
        return events

    def stop(self):
        self._stop_event.set()

    def run(self):
        """Main execution loop.

        A cycle runs immediately and then once per check interval. Cycles
        never overlap: scheduled runs that fall inside a still-running cycle
        are skipped.
        """
        self.logger.info("Docker Notify starting...")
        self.logger.info(f"Tracked images: {len(self.config.notify_services)}")
        self.logger.info(f"Check interval: {self.config.check_interval} minutes")
        interval = self.config.check_interval * 60
        next_run = time.monotonic()
        try:
            while not self._stop_event.is_set():
                try:
                    self.check_for_updates()
                except Exception as e:
                    self.logger.error(f"Error during update check: {e}", exc_info=True)
                next_run += interval
                now = time.monotonic()
                if now > next_run:
                    skipped = int((now - next_run) // interval) + 1
                    self.logger.warning(f"Update check overran the interval; skipping {skipped} scheduled run(s)")
                    next_run += skipped * interval
                self.logger.info(f"Check complete. Sleeping for {next_run - now:.0f} seconds...")
                self._stop_event.wait(max(0.0, next_run - now))
        except KeyboardInterrupt:
            self.logger.info("Received interrupt signal. Shutting down...")
        finally:
            self.action_registry.reset()


def load_env_file():
    env_file = os.getenv('ENV_FILE', '.env')
    if os.path.exists(env_file):
        load_dotenv(env_file)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Docker Notify')
    parser.add_argument('--config', dest='config', help='Path to config.json')
    parser.add_argument('--state-file', dest='state_file', help='Path to the state cache file')
    parser.add_argument('--once', action='store_true', help='Run a single update check and exit')
    parser.add_argument('--test', action='store_true', help='Validate configuration and registry auth, then exit')
    args = parser.parse_args()

    load_env_file()
    notifier = DockerNotify(config_file=args.config, state_file=args.state_file)

    if args.test:
        ok = True
        print(f'Configuration: OK ({len(notifier.config.notify_services)} images)')
        if notifier.config.has_credentials:
            try:
                notifier.registry_client.authenticate(notifier.config.dockerhub_username, notifier.config.dockerhub_password)
                print('Docker Hub auth: OK')
            except RegistryError as e:
                print(f'Docker Hub auth: FAIL - {e}')
                ok = False
        else:
            print('Docker Hub auth: skipped (no credentials configured)')
        sys.exit(0 if ok else 1)

    if args.once:
        try:
            notifier.check_for_updates()
        finally:
            notifier.action_registry.reset()
        sys.exit(0)

    signal.signal(signal.SIGTERM, lambda signum, frame: notifier.stop())
    notifier.run()


if __name__ == "__main__":
    main()
