"""
Training provider interface.

The lifecycle core only needs three provider operations: upload a training
file, create a training job from it, and read a job's status.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..core.exceptions import ExternalServiceError


@dataclass
class ProviderJob:
    """
    A training job as reported by the provider.
    
    Attributes:
        job_id: Provider job handle (required)
        status: Provider status string (required)
        model: Base model, or the fine-tuned model once training succeeds
        error: Provider error message, if the job failed
        training_file: File the job trains on
        raw: Full response payload
    """
    job_id: str
    status: str
    model: Optional[str] = None
    error: Optional[str] = None
    training_file: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    
    @classmethod
    def from_response(cls, data: Any, provider: str = "provider") -> "ProviderJob":
        """
        Validate a provider job payload.
        
        Raises:
            ExternalServiceError: If required fields are missing
        """
        if not isinstance(data, dict):
            raise ExternalServiceError(
                f"Malformed job response from {provider}: expected an object",
                provider=provider,
                retryable=False,
            )
        job_id = data.get("id")
        status = data.get("status")
        if not isinstance(job_id, str) or not job_id or not isinstance(status, str):
            raise ExternalServiceError(
                f"Malformed job response from {provider}: missing id or status",
                provider=provider,
                retryable=False,
            )
        
        error = data.get("error")
        if isinstance(error, dict):
            error = error.get("message") or error.get("code")
        
        return cls(
            job_id=job_id,
            status=status,
            model=data.get("fine_tuned_model") or data.get("model"),
            error=error or None,
            training_file=data.get("training_file"),
            raw=data,
        )


class TrainingProvider(ABC):
    """Abstract base class for model-training providers."""
    
    name: str = "provider"
    
    @abstractmethod
    def upload_file(self, content: bytes, filename: str = "training.jsonl") -> str:
        """
        Upload a training file.
        
        Returns:
            Provider file id
            
        Raises:
            ExternalServiceError: If the upload fails
        """
        pass
    
    @abstractmethod
    def create_job(self, file_id: str, model_hint: Optional[str] = None) -> ProviderJob:
        """
        Create a training job for an uploaded file.
        
        Raises:
            ExternalServiceError: If the job cannot be created
        """
        pass
    
    @abstractmethod
    def get_job(self, job_id: str) -> ProviderJob:
        """
        Read the current state of a training job.
        
        Raises:
            ExternalServiceError: If the job cannot be read
        """
        pass
    
    def close(self) -> None:
        """Release any held resources."""
        pass
