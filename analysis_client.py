import logging
import random
import time
from typing import Optional

import requests
from requests.exceptions import RequestException

from config_models import AnalysisBackendConfig

logger = logging.getLogger(__name__)

MAX_BACKOFF_MS = 10_000
MAX_UPLOAD_TIMEOUT = 180


class AnalysisBackendError(Exception):
    """Exception raised when the AI analysis backend fails or is unreachable."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AnalysisBackendClient:
    def __init__(self, config: AnalysisBackendConfig):
        self.config = config

    def _url(self, path: str) -> str:
        return f"{self.config.base_url}/{path.lstrip('/')}"

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def check_health(self) -> dict:
        """Probe ``GET /health``.  Never raises.

        Returns ``{"isHealthy", "responseTime", "error"}`` with the response
        time in milliseconds.
        """
        started = time.monotonic()
        try:
            response = requests.get(self._url("/health"), timeout=self.config.health_timeout)
        except RequestException as e:
            return {
                "isHealthy": False,
                "responseTime": int((time.monotonic() - started) * 1000),
                "error": str(e),
            }
        elapsed = int((time.monotonic() - started) * 1000)
        if response.ok:
            return {"isHealthy": True, "responseTime": elapsed, "error": None}
        return {
            "isHealthy": False,
            "responseTime": elapsed,
            "error": f"Health check failed: {response.status_code} {response.reason}",
        }

    def wait_for_health(self, max_wait: float = 30.0, interval: float = 2.0) -> bool:
        deadline = time.monotonic() + max_wait
        while time.monotonic() < deadline:
            health = self.check_health()
            if health["isHealthy"]:
                logger.info("Analysis backend healthy (%s ms)", health["responseTime"])
                return True
            logger.info("Analysis backend not ready: %s", health["error"])
            time.sleep(interval)
        logger.warning("Timed out waiting for analysis backend after %ss", max_wait)
        return False

    # ------------------------------------------------------------------
    # Retry helper
    # ------------------------------------------------------------------

    @staticmethod
    def backoff_delay(attempt: int) -> float:
        """Seconds to wait after *attempt* (1-based) failed, jitter included."""
        base_ms = min(1000 * 2 ** (attempt - 1), MAX_BACKOFF_MS)
        return (base_ms + random.uniform(0, 1000)) / 1000

    def attempt_timeout(self, attempt: int) -> float:
        return min(self.config.timeout + (attempt - 1) * 30, MAX_UPLOAD_TIMEOUT)

    def request_with_retry(self, method: str, path: str, **kwargs) -> requests.Response:
        """Send a request, retrying transport errors and 5xx responses.

        Client errors (4xx) are returned to the caller immediately.

        Raises:
            AnalysisBackendError: If every attempt failed.
        """
        url = self._url(path)
        attempts = max(1, self.config.max_retries)
        last_error = ""
        last_status = None
        for attempt in range(1, attempts + 1):
            try:
                response = requests.request(
                    method, url, timeout=self.attempt_timeout(attempt), **kwargs
                )
            except RequestException as e:
                last_error = str(e)
                logger.warning("Attempt %d/%d to %s failed: %s", attempt, attempts, path, e)
            else:
                if response.ok or 400 <= response.status_code < 500:
                    return response
                last_status = response.status_code
                last_error = response.text
                logger.warning(
                    "Attempt %d/%d to %s returned %s", attempt, attempts, path, response.status_code
                )
            if attempt < attempts:
                time.sleep(self.backoff_delay(attempt))

        logger.error("All %d attempts to %s failed", attempts, path)
        raise AnalysisBackendError(
            f"Analysis backend request failed after {attempts} attempts",
            status_code=last_status,
            body=last_error,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def upload_document(
        self,
        file_name: str,
        content: bytes,
        user_id: str,
        content_type: Optional[str] = None,
        store_in_vector_db: bool = True,
    ) -> dict:
        """Upload a document for analysis and return the backend's JSON result."""
        health = self.check_health()
        if not health["isHealthy"]:
            logger.info("Analysis backend looks unhealthy, uploading anyway")

        response = self.request_with_retry(
            "POST",
            "/upload-financial-document",
            params={
                "user_id": user_id,
                "store_in_vector_db": "true" if store_in_vector_db else "false",
            },
            files={"file": (file_name, content, content_type or "application/octet-stream")},
        )
        if not response.ok:
            raise AnalysisBackendError(
                "Failed to process file with AI backend",
                status_code=response.status_code,
                body=response.text,
            )
        logger.info("Uploaded %s to analysis backend", file_name)
        return response.json()

    def get_analysis(self, analysis_id) -> dict:
        """Fetch the detailed analysis payload stored for *analysis_id*."""
        try:
            response = requests.get(
                self._url("/get-analysis"),
                params={"analysis_id": analysis_id},
                timeout=self.config.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except (RequestException, ValueError) as e:
            raise AnalysisBackendError(f"Could not fetch analysis {analysis_id}: {e}")
        analysis = body.get("analysis") if isinstance(body, dict) else None
        return analysis if isinstance(analysis, dict) else {}

    def chat(self, message: str, user_id: str, conversation_history=None) -> dict:
        try:
            response = requests.post(
                self._url("/chat"),
                json={
                    "message": message,
                    "user_id": user_id,
                    "conversation_history": conversation_history or [],
                },
                timeout=self.config.timeout,
            )
            response.raise_for_status()
            return response.json()
        except (RequestException, ValueError) as e:
            raise AnalysisBackendError(f"Chat request failed: {e}")

    def delete_document(self, document_id, user_id: str) -> bool:
        """Remove a document from the backend vector store; False on any failure."""
        try:
            response = requests.delete(
                self._url(f"/document/{document_id}"),
                params={"user_id": user_id},
                timeout=self.config.timeout,
            )
        except RequestException as e:
            logger.info("Backend unavailable for vector deletion of %s: %s", document_id, e)
            return False
        if not response.ok:
            logger.info("Backend refused vector deletion of %s (%s)", document_id, response.status_code)
        return response.ok
