"""
Unit tests for FineTuneService wiring and the store factory.
"""

import pytest

from finetune.config.settings import FineTuneConfig
from finetune.core.exceptions import ConfigError, NotFoundError
from finetune.notify.base import LoggingNotifier
from finetune.notify.email import EmailFunctionNotifier
from finetune.providers.openai_client import OpenAIFineTuneClient
from finetune.service import FineTuneService
from finetune.storage import create_store
from finetune.storage.sqlite_store import SqliteLifecycleStore

from fakes import InMemorySource, make_rows


class TestFineTuneService:
    """Tests for the service facade."""
    
    def test_components_share_configuration(self, store, provider, notifier, source):
        config = FineTuneConfig(max_retries=5, lock_ttl_seconds=60, min_examples=3)
        
        service = FineTuneService(store, provider, notifier, source, config=config)
        
        assert service.orchestrator.max_retries == 5
        assert service.poller.max_retries == 5
        assert service.locks.ttl.total_seconds() == 60
        assert service.exporter.min_examples == 3
        assert service.submitter.default_model == "gpt-3.5-turbo"
    
    def test_describe_snapshot(self, service):
        created = service.builder.create({"emotions": ["joy"]}, name="joy-only", created_by="analyst-1")
        
        described = service.describe_snapshot(created.snapshot.snapshot_id)
        
        assert described["snapshot"]["job_id"] == created.job_id
        assert described["lock"]["holder_id"] == "test-runner"
        assert [e["status"] for e in described["events"]] == ["validating_files"]
    
    def test_describe_hides_expired_lock(self, service, clock):
        created = service.builder.create({"emotions": ["joy"]}, name="joy-only", created_by="analyst-1")
        clock.advance(minutes=10)
        
        assert service.describe_snapshot(created.snapshot.snapshot_id)["lock"] is None
    
    def test_describe_unknown(self, service):
        with pytest.raises(NotFoundError):
            service.describe_snapshot("missing")
    
    def test_queue_stats(self, service):
        service.builder.create({"emotions": ["joy"]}, name="joy-only", created_by="analyst-1")
        
        assert service.queue_stats() == {"total": 1, "by_status": {"validating_files": 1}}


class TestFromConfig:
    """Tests for FineTuneService.from_config."""
    
    def make_config(self, tmp_path, **provider):
        config = FineTuneConfig(data_path=str(tmp_path / "rows.jsonl"))
        config.storage.db_path = str(tmp_path / "finetune.db")
        config.provider.api_key = provider.get("api_key", "sk-test")
        return config
    
    def test_builds_production_components(self, tmp_path):
        config = self.make_config(tmp_path)
        
        service = FineTuneService.from_config(config)
        try:
            assert isinstance(service.store, SqliteLifecycleStore)
            assert isinstance(service.provider, OpenAIFineTuneClient)
            assert isinstance(service.notifier, LoggingNotifier)
        finally:
            service.close()
    
    def test_email_notifier_when_configured(self, tmp_path):
        config = self.make_config(tmp_path)
        config.notifier.email_function_url = "https://functions.example.test/send-email"
        
        service = FineTuneService.from_config(config, source=InMemorySource(make_rows(1)))
        try:
            assert isinstance(service.notifier, EmailFunctionNotifier)
        finally:
            service.close()
    
    def test_requires_api_key(self, tmp_path):
        with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
            FineTuneService.from_config(self.make_config(tmp_path, api_key=None))
    
    def test_requires_data_source(self, tmp_path):
        config = self.make_config(tmp_path)
        config.data_path = None
        
        with pytest.raises(ConfigError, match="FINETUNE_DATA_PATH"):
            FineTuneService.from_config(config)


class TestCreateStore:
    """Tests for the store factory."""
    
    def test_sqlite_backend(self, tmp_path):
        store = create_store(backend="sqlite", db_path=tmp_path / "nested" / "store.db")
        
        assert isinstance(store, SqliteLifecycleStore)
        assert (tmp_path / "nested" / "store.db").exists()
    
    def test_backend_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FINETUNE_DB_BACKEND", "SQLite")
        
        assert isinstance(create_store(db_path=tmp_path / "env.db"), SqliteLifecycleStore)
    
    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown backend"):
            create_store(backend="postgres")
