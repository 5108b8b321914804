"""
REST API client for the sqlrs engine (v1 API).
"""

import json
import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union
from urllib.parse import quote

import requests

from errors import RemoteError
from models import (
    DeleteResult,
    HealthResponse,
    Instance,
    PrepareJob,
    PrepareJobAccepted,
    PrepareJobRequest,
    RunRequest,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/v1"
USER_AGENT = "sqlrs-cli"


def normalize_base_url(raw: str) -> str:
    """Default to http:// and drop trailing slashes."""
    value = (raw or "").strip()
    if not value:
        return value
    if not value.startswith(("http://", "https://")):
        value = "http://" + value
    return value.rstrip("/")


class SqlrsRestClient:
    """REST client for the sqlrs engine v1 API.

    Requests are issued exactly once; callers decide what a failure means.
    """

    def __init__(
        self,
        endpoint: str,
        auth_token: Optional[str] = None,
        timeout_s: Union[float, Tuple[float, float]] = 30.0,
        user_agent: str = USER_AGENT,
    ):
        """
        Initialize the engine REST client.

        Args:
            endpoint: Engine base URL (scheme optional)
            auth_token: Bearer token, if the engine requires one
            timeout_s: Timeout in seconds, or a (connect, read) pair
            user_agent: User-Agent header value
        """
        self.base_url = normalize_base_url(endpoint)
        self.timeout_s = timeout_s

        self.session = requests.Session()
        self.session.headers["User-Agent"] = user_agent
        if auth_token:
            self.session.headers["Authorization"] = f"Bearer {auth_token}"

    def _url(self, path: str) -> str:
        """Construct full API URL from path (absolute URLs pass through)."""
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        """
        Execute a single HTTP request.

        Raises:
            RemoteError: If the engine cannot be reached
        """
        url = self._url(path)
        logger.debug(f"{method} {url}")
        try:
            return self.session.request(method, url, timeout=self.timeout_s, **kwargs)
        except requests.RequestException as e:
            raise RemoteError(f"{method} {url} failed: {e}") from e

    def _error(self, resp: requests.Response, action: str) -> RemoteError:
        """Build a RemoteError from an engine error body or the bare status."""
        message = ""
        try:
            data = resp.json()
            if isinstance(data, dict):
                message = str(data.get("message") or "")
                details = data.get("details")
                if message and details:
                    message = f"{message}: {details}"
        except ValueError:
            pass
        if not message:
            message = f"unexpected status {resp.status_code}"
        return RemoteError(f"{action} failed ({resp.status_code}): {message}", resp.status_code)

    def _json(self, resp: requests.Response, action: str) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise RemoteError(f"{action} returned invalid JSON: {e}", resp.status_code) from e

    def _get_json(self, path: str, action: str, **kwargs) -> Any:
        resp = self._request("GET", path, **kwargs)
        if resp.status_code != 200:
            raise self._error(resp, action)
        return self._json(resp, action)

    def _stream_lines(self, resp: requests.Response, action: str) -> Iterator[Dict]:
        """Yield decoded NDJSON objects, closing the response when done."""
        try:
            for line in resp.iter_lines():
                if not line:
                    continue
                try:
                    if isinstance(line, bytes):
                        line = line.decode("utf-8")
                    event = json.loads(line)
                except ValueError as e:
                    # UnicodeDecodeError is a ValueError
                    raise RemoteError(f"{action} sent a malformed event: {e}") from e
                yield event
        except requests.RequestException as e:
            raise RemoteError(f"{action} stream interrupted: {e}") from e
        finally:
            resp.close()

    def health(self) -> HealthResponse:
        """Get engine health."""
        data = self._get_json(f"{API_PREFIX}/health", "health")
        return HealthResponse.from_dict(data)

    def create_prepare_job(self, request: PrepareJobRequest) -> PrepareJobAccepted:
        """
        Submit a prepare job.

        Args:
            request: Prepare job request body

        Returns:
            Accepted job references

        Raises:
            RemoteError: If submission fails
        """
        resp = self._request(
            "POST", f"{API_PREFIX}/prepare-jobs", json=request.to_dict()
        )
        if resp.status_code not in (201, 202):
            raise self._error(resp, "create prepare job")
        data = self._json(resp, "create prepare job")
        accepted = PrepareJobAccepted.from_dict(data)
        if not accepted.job_id:
            raise RemoteError(f"create prepare job returned unexpected response: {data}")
        return accepted

    def get_prepare_job(
        self, job_id: str, status_url: Optional[str] = None
    ) -> Optional[PrepareJob]:
        """
        Get the status resource of a prepare job.

        Returns:
            The job, or None if the engine does not know it
        """
        path = status_url or f"{API_PREFIX}/prepare-jobs/{quote(job_id.strip(), safe='')}"
        resp = self._request("GET", path)
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise self._error(resp, "get prepare job")
        return PrepareJob.from_dict(self._json(resp, "get prepare job"))

    def stream_prepare_events(self, events_url: str) -> Iterator[Dict]:
        """
        Open a prepare job event stream.

        Returns:
            Iterator over decoded events in arrival order

        Raises:
            RemoteError: If the stream cannot be opened or breaks mid-way
        """
        resp = self._request("GET", events_url, stream=True)
        if resp.status_code != 200:
            error = self._error(resp, "prepare events")
            resp.close()
            raise error
        return self._stream_lines(resp, "prepare events")

    def list_instances(
        self, id_prefix: Optional[str] = None, image: Optional[str] = None
    ) -> List[Instance]:
        """List instances, optionally filtered."""
        params = {}
        if id_prefix:
            params["id_prefix"] = id_prefix
        if image:
            params["image"] = image
        data = self._get_json(f"{API_PREFIX}/instances", "list instances", params=params)
        return [Instance.from_dict(item) for item in data or []]

    def delete_instance(
        self, instance_id: str, force: bool = False, dry_run: bool = False
    ) -> Tuple[DeleteResult, int]:
        """
        Delete an instance.

        Returns:
            Tuple of (delete result, HTTP status); 409 means blocked

        Raises:
            RemoteError: For any status other than 200 and 409
        """
        params = {}
        if force:
            params["force"] = "true"
        if dry_run:
            params["dry_run"] = "true"
        path = f"{API_PREFIX}/instances/{quote(instance_id.strip(), safe='')}"
        resp = self._request("DELETE", path, params=params)
        if resp.status_code not in (200, 409):
            raise self._error(resp, "delete instance")
        data = self._json(resp, "delete instance")
        try:
            result = DeleteResult.from_dict(data or {})
        except (AttributeError, TypeError, ValueError) as e:
            raise RemoteError(
                f"delete instance returned unexpected response: {e}", resp.status_code
            ) from e
        return result, resp.status_code

    def run_command(self, request: RunRequest) -> Iterator[Dict]:
        """
        Start a run and stream its events.

        Raises:
            RemoteError: If the run cannot be started or the stream breaks
        """
        resp = self._request(
            "POST", f"{API_PREFIX}/runs", json=request.to_dict(), stream=True
        )
        if resp.status_code != 200:
            error = self._error(resp, "run")
            resp.close()
            raise error
        return self._stream_lines(resp, "run")

    def get_config(self, path: Optional[str] = None, effective: bool = False) -> Any:
        """Read engine configuration (whole document or one path)."""
        params = {}
        if path:
            params["path"] = path
        if effective:
            params["effective"] = "true"
        return self._get_json(f"{API_PREFIX}/config", "get config", params=params)

    def set_config(self, path: str, value: Any) -> Dict:
        """Set one engine configuration path."""
        resp = self._request(
            "PATCH", f"{API_PREFIX}/config", json={"path": path, "value": value}
        )
        if resp.status_code != 200:
            raise self._error(resp, "set config")
        return self._json(resp, "set config")

    def remove_config(self, path: str) -> Dict:
        """Remove one engine configuration path."""
        resp = self._request("DELETE", f"{API_PREFIX}/config", params={"path": path})
        if resp.status_code != 200:
            raise self._error(resp, "remove config")
        return self._json(resp, "remove config")
