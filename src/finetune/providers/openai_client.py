"""
OpenAI-compatible fine-tuning provider client.

Thin HTTP client over the /files and /fine_tuning/jobs endpoints.
"""

import logging
from typing import Any, Dict, Optional

import requests

from ..core.exceptions import ExternalServiceError
from .base import ProviderJob, TrainingProvider


logger = logging.getLogger(__name__)


class OpenAIFineTuneClient(TrainingProvider):
    """
    HTTP client for an OpenAI-compatible fine-tuning API.
    
    Retries are not performed here; callers wrap each call with
    utils.retry.retry_with_backoff.
    
    Example:
        >>> client = OpenAIFineTuneClient(api_key="sk-...")
        >>> file_id = client.upload_file(b'{"messages": []}\\n')
        >>> job = client.create_job(file_id, "gpt-3.5-turbo")
        >>> client.get_job(job.job_id).status
        'validating_files'
    """
    
    name = "openai"
    
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        timeout: int = 60,
        webhook_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the client.
        
        Args:
            api_key: Bearer token for the provider
            base_url: API base URL
            timeout: Request timeout in seconds
            webhook_url: Optional status webhook passed on job creation
            session: Optional pre-configured requests session
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.webhook_url = webhook_url
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {api_key}"})
        
        logger.debug(f"Initialized OpenAIFineTuneClient: base_url={self.base_url}")
    
    def upload_file(self, content: bytes, filename: str = "training.jsonl") -> str:
        """Upload training data with purpose=fine-tune and return the file id."""
        data = self._request(
            "POST",
            "/files",
            data={"purpose": "fine-tune"},
            files={"file": (filename, content, "application/jsonl")},
        )
        file_id = data.get("id")
        if not isinstance(file_id, str) or not file_id:
            raise ExternalServiceError(
                "Malformed file response from openai: missing id",
                provider=self.name,
                retryable=False,
            )
        logger.info(f"Uploaded training file {file_id} ({len(content)} bytes)")
        return file_id
    
    def create_job(self, file_id: str, model_hint: Optional[str] = None) -> ProviderJob:
        """Create a fine-tuning job for an uploaded file."""
        payload: Dict[str, Any] = {"training_file": file_id}
        if model_hint:
            payload["model"] = model_hint
        if self.webhook_url:
            payload["webhook_url"] = self.webhook_url
        
        job = ProviderJob.from_response(
            self._request("POST", "/fine_tuning/jobs", json=payload),
            provider=self.name,
        )
        logger.info(f"Created fine-tuning job {job.job_id} (status={job.status})")
        return job
    
    def get_job(self, job_id: str) -> ProviderJob:
        """Retrieve a fine-tuning job."""
        return ProviderJob.from_response(
            self._request("GET", f"/fine_tuning/jobs/{job_id}"),
            provider=self.name,
        )
    
    def close(self) -> None:
        """Close the session."""
        if self.session:
            self.session.close()
    
    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """
        Make an HTTP request and decode the JSON body.
        
        Raises:
            ExternalServiceError: On connection errors, non-2xx responses or invalid JSON
        """
        url = f"{self.base_url}{path}"
        try:
            logger.debug(f"{method} {url}")
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to reach provider at {url}: {e}")
            raise ExternalServiceError(
                f"Failed to reach provider at {self.base_url}: {e}",
                provider=self.name,
            )
        
        if response.status_code >= 400:
            body = response.text[:500]
            retryable = response.status_code == 429 or response.status_code >= 500
            logger.error(f"HTTP error from provider: {response.status_code} - {body}")
            raise ExternalServiceError(
                f"Provider API error: {response.status_code} - {body}",
                provider=self.name,
                status_code=response.status_code,
                retryable=retryable,
            )
        
        try:
            return response.json()
        except ValueError as e:
            logger.error(f"Invalid JSON response from provider: {e}")
            raise ExternalServiceError(
                f"Invalid JSON response from provider: {e}",
                provider=self.name,
                status_code=response.status_code,
                retryable=False,
            )
