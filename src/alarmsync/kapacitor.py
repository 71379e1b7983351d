"""Minimal client for the Kapacitor v1 task API.

Only the calls the synchronizer needs are covered: ping, list, create
and delete. Every request carries the client's own timeout.
"""
import logging
from urllib.parse import quote

import requests

from alarmsync.models import AlarmSyncError, Task, TaskStatus, TaskType

logger = logging.getLogger(__name__)

__all__ = ['KapacitorClient', 'KapacitorError']

API_PREFIX = '/kapacitor/v1'
TASK_FIELDS = ('type', 'status', 'executing', 'dbrps')


class KapacitorError(AlarmSyncError):
    """Raised when a node request fails in transport or returns non-2xx.
    """

    def __init__(self, url: str, message: str, status: int = None):
        self.url = url
        self.status = status
        self.message = message
        detail = f'{status} ' if status is not None else ''
        super().__init__(f'kapacitor {url}: {detail}{message}')


class KapacitorClient:
    """Handle for one alerting node.
    """

    def __init__(self, url: str, timeout: float = 20, session: requests.Session = None):
        """Initialize client.

        Args:
            url: Node base URL, e.g. ``http://10.0.0.1:9092``
            timeout: Per-request timeout in seconds
            session: Optional shared requests session
        """
        if not url or '://' not in url:
            raise ValueError(f'Invalid kapacitor url: {url!r}')
        self.url = url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def __repr__(self) -> str:
        return f'KapacitorClient({self.url})'

    def task_link(self, task_id: str) -> str:
        return f'{API_PREFIX}/tasks/{quote(task_id, safe="")}'

    def _request(self, method: str, path: str, expected_404: bool = False, **kwargs) -> requests.Response | None:
        url = f'{self.url}{path}'
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            raise KapacitorError(self.url, f'{method} {path} timed out after {self.timeout}s') from e
        except requests.exceptions.RequestException as e:
            raise KapacitorError(self.url, f'{method} {path} failed: {e}') from e

        if expected_404 and response.status_code == 404:
            return None
        if not response.ok:
            raise KapacitorError(self.url, _error_message(response), response.status_code)
        return response

    def ping(self) -> None:
        """Check that the node answers.

        Raises
            KapacitorError: If the node is unreachable or unhealthy
        """
        self._request('GET', f'{API_PREFIX}/ping')

    def list_tasks(self, limit: int = -1) -> list[Task]:
        """List tasks on this node; ``limit=-1`` means unbounded.
        """
        params = {'limit': limit, 'fields': ','.join(TASK_FIELDS)}
        response = self._request('GET', f'{API_PREFIX}/tasks', params=params)
        data = response.json() or {}
        return [Task.from_api(t, node=self.url) for t in data.get('tasks') or []]

    def create_task(self, task_id: str, script: str, dbrps: list[dict],
                    task_type: TaskType = TaskType.BATCH, status: TaskStatus = TaskStatus.ENABLED) -> Task:
        """Create a task. Fails if a task with the same id exists.
        """
        payload = {
            'id': task_id,
            'type': TaskType(task_type).value,
            'dbrps': dbrps,
            'script': script,
            'status': TaskStatus(status).value,
        }
        response = self._request('POST', f'{API_PREFIX}/tasks', json=payload)
        try:
            data = response.json()
        except ValueError:
            data = payload
        return Task.from_api({**payload, **(data or {})}, node=self.url)

    def delete_task(self, task_id: str) -> bool:
        """Delete a task.

        Returns
            False if the node had no such task, True otherwise
        """
        response = self._request('DELETE', self.task_link(task_id), expected_404=True)
        return response is not None

    def close(self) -> None:
        self.session.close()


def _error_message(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text.strip() or response.reason or 'unknown error'
    if isinstance(data, dict) and data.get('error'):
        return data['error']
    return response.text.strip() or 'unknown error'
