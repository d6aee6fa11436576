"""
Automation worker endpoint client implementation.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)


class WorkerError(Exception):
    """Base exception for worker client errors."""

    pass


class WorkerAPIError(WorkerError):
    """Worker endpoint returned an error response."""

    def __init__(self, status_code: int, message: str, response_body: str | None = None):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"Worker API error {status_code}: {message}")


class WorkerConnectionError(WorkerError):
    """Failed to reach the worker endpoint."""

    pass


@dataclass
class WorkerRun:
    """A worker run started by the endpoint."""

    run_id: str
    status: str

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "WorkerRun | None":
        """Parse {runId, status}; None when the endpoint did not start a run."""
        run_id = data.get("runId") or data.get("run_id")
        if not run_id:
            return None
        return cls(run_id=str(run_id), status=data.get("status") or "running")


class WorkerClient:
    """
    Client for the background worker trigger endpoint.

    Sends {workerType, initialPrompt, triggerContext, triggeredBy} and
    expects {runId, status} back. Retries transient failures (429/5xx)
    with backoff at the HTTP adapter level.
    """

    DEFAULT_TIMEOUT = 30
    WORKER_ENDPOINT = "/api/worker"

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 2,
        backoff_factor: float = 0.5,
    ):
        """
        Initialize worker client.

        Args:
            base_url: Application URL hosting the worker endpoint
            token: Optional bearer token
            timeout: Request timeout in seconds
            max_retries: Maximum HTTP retry attempts
            backoff_factor: Backoff factor for retries
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["POST"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def trigger(
        self,
        worker_type: str,
        initial_prompt: str,
        trigger_context: dict[str, Any],
        triggered_by: str = "auto",
    ) -> WorkerRun | None:
        """
        Start a worker run.

        Args:
            worker_type: Worker kind (e.g. "receipt_search")
            initial_prompt: Instruction handed to the worker
            trigger_context: Entity references (transactionId, fileId, ...)
            triggered_by: "auto" or "user"

        Returns:
            WorkerRun, or None when the endpoint answered without a run id

        Raises:
            WorkerConnectionError: Endpoint unreachable or timed out
            WorkerAPIError: Endpoint returned an error status
        """
        url = f"{self.base_url}{self.WORKER_ENDPOINT}"
        body = {
            "workerType": worker_type,
            "initialPrompt": initial_prompt,
            "triggerContext": trigger_context,
            "triggeredBy": triggered_by,
        }
        logger.debug(f"Worker trigger: POST {url} {json.dumps(body)}")

        try:
            response = self.session.post(url, json=body, timeout=self.timeout)
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Connection error to {url}: {e}")
            raise WorkerConnectionError(
                f"Failed to reach worker endpoint at {self.base_url}: {e}"
            ) from e
        except requests.exceptions.Timeout as e:
            logger.error(f"Timeout for {url}: {e}")
            raise WorkerConnectionError(f"Worker request timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Request error for {url}: {e}")
            raise WorkerError(f"Worker request failed: {e}") from e

        if not response.ok:
            try:
                message = response.json().get("error", response.reason)
            except ValueError:
                message = response.reason
            logger.error(f"Worker API error {response.status_code}: {message}")
            raise WorkerAPIError(response.status_code, str(message), response.text)

        try:
            data = response.json()
        except ValueError:
            logger.warning(f"Worker endpoint returned non-JSON body ({response.status_code})")
            return None

        run = WorkerRun.from_response(data if isinstance(data, dict) else {})
        if run:
            logger.info(f"Started {worker_type} worker run {run.run_id} ({run.status})")
        return run
