import os
import math
import time
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

import requests

from notify_core.models import RegistryError, RepositoryNotFoundError

DOCKER_HUB_BASE_URL = 'https://hub.docker.com'
PAGE_SIZE = 100
HTTP_TIMEOUT_SECONDS = 15


class _TransientError(RegistryError):
    """Connection failures, timeouts and 5xx answers; safe to retry."""


class DockerHubClient:
    """Stateless client for the Docker Hub v2 API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
        timeout: int = HTTP_TIMEOUT_SECONDS,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        max_workers: int = 8,
    ):
        self.base_url = (base_url or os.getenv('DOCKERHUB_URL') or DOCKER_HUB_BASE_URL).rstrip('/')
        self.logger = logger or logging.getLogger(__name__)
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.max_workers = max(1, max_workers)

    def authenticate(self, username: str, password: str) -> str:
        """Exchange credentials for a bearer token.

        The username is lower-cased; Docker Hub only treats the password as
        case-sensitive.
        """
        url = f"{self.base_url}/v2/users/login"
        try:
            resp = requests.post(
                url,
                json={'username': username.lower(), 'password': password},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            self.logger.error(f"Failed to obtain Docker Hub token: {e}")
            raise RegistryError(f"Authentication failed: {e}") from e
        token = data.get('token') if isinstance(data, dict) else None
        if not token:
            self.logger.error("Docker Hub login response did not contain a token")
            raise RegistryError("Authentication response did not contain a token")
        return token

    def fetch_repository(self, namespace: str, name: str, token: Optional[str] = None) -> Dict[str, Any]:
        url = f"{self.base_url}/v2/repositories/{namespace.lower()}/{name}"
        return self._get_json(url, token)

    def fetch_all_tags(self, namespace: str, name: str, token: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return every tag of a repository, in page order.

        The first page discloses the total count; the remaining pages are
        requested concurrently. A failure on any page fails the whole call.
        """
        path = f"{self.base_url}/v2/repositories/{namespace.lower()}/{name}/tags"
        first = self._get_json(self._page_url(path, 1), token)
        try:
            total = int(first.get('count') or 0)
        except (TypeError, ValueError) as e:
            raise RegistryError(f"Invalid tag count for {namespace}/{name}: {first.get('count')!r}") from e
        results = list(first.get('results') or [])
        max_page = math.ceil(total / PAGE_SIZE)
        if max_page <= 1:
            return results

        pages = list(range(2, max_page + 1))
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(pages))) as pool:
            # map() yields in submission order, so pages are reassembled in order
            for page in pool.map(lambda p: self._get_json(self._page_url(path, p), token), pages):
                results.extend(page.get('results') or [])
        return results

    @staticmethod
    def _page_url(path: str, page: int) -> str:
        return f"{path}?page_size={PAGE_SIZE}&page={page}"

    def _get_json(self, url: str, token: Optional[str] = None) -> Dict[str, Any]:
        headers = {}
        if token:
            headers['Authorization'] = f"Bearer {token}"

        def do_get() -> Dict[str, Any]:
            try:
                resp = requests.get(url, headers=headers, timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout) as e:
                raise _TransientError(f"Request to {url} failed: {e}") from e
            if resp.status_code == 404:
                raise RepositoryNotFoundError(f"Not found: {url}")
            if resp.status_code >= 500:
                raise _TransientError(f"HTTP {resp.status_code} from {url}")
            try:
                resp.raise_for_status()
                data = resp.json()
            except (requests.RequestException, ValueError) as e:
                raise RegistryError(f"Request to {url} failed: {e}") from e
            if not isinstance(data, dict):
                raise RegistryError(f"Unexpected payload from {url}")
            return data

        try:
            return self._retry(do_get)
        except RegistryError as e:
            self.logger.error(f"Docker Hub API request failed: {e}")
            raise

    def _retry(self, func: Callable[[], Any]) -> Any:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return func()
            except _TransientError as e:
                if attempt == self.max_attempts:
                    raise
                sleep = self.backoff_base * (2 ** (attempt - 1))
                self.logger.warning(f"Transient error: {e}. Retrying in {sleep:.1f}s (attempt {attempt}/{self.max_attempts})")
                time.sleep(sleep)
