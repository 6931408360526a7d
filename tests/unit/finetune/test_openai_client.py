"""
Unit tests for the OpenAI-compatible fine-tuning client.

Tests for:
- File upload and job creation payloads
- Job response validation
- Error classification (retryable vs not)
"""

from unittest.mock import MagicMock

import pytest
import requests

from finetune.core.exceptions import ExternalServiceError
from finetune.providers.base import ProviderJob
from finetune.providers.openai_client import OpenAIFineTuneClient


def make_response(status_code=200, body=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body
    return response


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def client(session):
    return OpenAIFineTuneClient(
        api_key="sk-test",
        base_url="https://api.example.test/v1/",
        timeout=30,
        session=session,
    )


class TestOpenAIFineTuneClient:
    """Tests for OpenAIFineTuneClient."""
    
    def test_initialization(self, client, session):
        """Test client initialization."""
        assert client.base_url == "https://api.example.test/v1"
        assert client.timeout == 30
        session.headers.update.assert_called_once_with({"Authorization": "Bearer sk-test"})
    
    def test_upload_file(self, client, session):
        """Test uploading training data."""
        session.request.return_value = make_response(body={"id": "file-abc"})
        
        file_id = client.upload_file(b"{}\n", "snap.jsonl")
        
        assert file_id == "file-abc"
        args, kwargs = session.request.call_args
        assert args == ("POST", "https://api.example.test/v1/files")
        assert kwargs["data"] == {"purpose": "fine-tune"}
        assert kwargs["files"]["file"][0] == "snap.jsonl"
        assert kwargs["timeout"] == 30
    
    def test_upload_without_id(self, client, session):
        session.request.return_value = make_response(body={"object": "file"})
        
        with pytest.raises(ExternalServiceError, match="missing id") as exc_info:
            client.upload_file(b"{}\n")
        
        assert exc_info.value.retryable is False
    
    def test_create_job_payload(self, session):
        """Test the job payload includes model and webhook when set."""
        client = OpenAIFineTuneClient(
            api_key="sk-test",
            webhook_url="https://hooks.example.test/fine-tune",
            session=session,
        )
        session.request.return_value = make_response(
            body={"id": "ftjob-1", "status": "validating_files", "model": "gpt-3.5-turbo"}
        )
        
        job = client.create_job("file-abc", "gpt-3.5-turbo")
        
        assert job.job_id == "ftjob-1"
        assert job.status == "validating_files"
        assert session.request.call_args.kwargs["json"] == {
            "training_file": "file-abc",
            "model": "gpt-3.5-turbo",
            "webhook_url": "https://hooks.example.test/fine-tune",
        }
    
    def test_get_job_reports_fine_tuned_model_and_error(self, client, session):
        session.request.return_value = make_response(body={
            "id": "ftjob-1",
            "status": "failed",
            "model": "gpt-3.5-turbo",
            "fine_tuned_model": None,
            "error": {"code": "invalid_file", "message": "Line 3 is not valid JSON"},
        })
        
        job = client.get_job("ftjob-1")
        
        assert session.request.call_args.args == (
            "GET", "https://api.example.test/v1/fine_tuning/jobs/ftjob-1"
        )
        assert job.model == "gpt-3.5-turbo"
        assert job.error == "Line 3 is not valid JSON"
    
    @pytest.mark.parametrize("status_code,retryable", [
        (400, False),
        (401, False),
        (429, True),
        (500, True),
        (503, True),
    ])
    def test_http_errors(self, client, session, status_code, retryable):
        """4xx errors other than 429 are not worth retrying."""
        session.request.return_value = make_response(status_code=status_code, text="nope")
        
        with pytest.raises(ExternalServiceError) as exc_info:
            client.get_job("ftjob-1")
        
        assert exc_info.value.status_code == status_code
        assert exc_info.value.retryable is retryable
    
    def test_connection_error_is_retryable(self, client, session):
        session.request.side_effect = requests.exceptions.ConnectionError("refused")
        
        with pytest.raises(ExternalServiceError, match="Failed to reach provider") as exc_info:
            client.get_job("ftjob-1")
        
        assert exc_info.value.retryable is True
    
    def test_invalid_json(self, client, session):
        session.request.return_value = make_response(body=ValueError("Expecting value"))
        
        with pytest.raises(ExternalServiceError, match="Invalid JSON"):
            client.get_job("ftjob-1")
    
    def test_close(self, client, session):
        client.close()
        
        session.close.assert_called_once()


class TestProviderJob:
    """Tests for ProviderJob.from_response."""
    
    @pytest.mark.parametrize("payload", [
        None,
        [],
        {"status": "running"},
        {"id": "ftjob-1"},
        {"id": "", "status": "running"},
    ])
    def test_malformed_payloads(self, payload):
        with pytest.raises(ExternalServiceError, match="Malformed job response"):
            ProviderJob.from_response(payload, provider="openai")
    
    def test_fine_tuned_model_preferred(self):
        job = ProviderJob.from_response({
            "id": "ftjob-1",
            "status": "succeeded",
            "model": "gpt-3.5-turbo",
            "fine_tuned_model": "ft:gpt-3.5-turbo:org::xyz",
        })
        
        assert job.model == "ft:gpt-3.5-turbo:org::xyz"
        assert job.error is None
