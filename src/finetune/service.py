"""
Wires the lifecycle components together.

Every collaborator (store, provider, notifier, data source, clock) is passed
in, so tests and hosts can substitute their own. ``from_config`` builds the
production set from a FineTuneConfig.
"""

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .config.settings import FineTuneConfig
from .core.exceptions import ConfigError, NotFoundError
from .core.utils import utc_now
from .export.base import TrainingDataSource
from .export.file_source import FileTrainingDataSource
from .export.jsonl import JsonlTrainingExporter
from .jobs.submitter import JobSubmitter
from .locks.manager import LockManager
from .notify.base import LoggingNotifier, Notifier
from .notify.email import EmailFunctionNotifier
from .providers.base import TrainingProvider
from .providers.openai_client import OpenAIFineTuneClient
from .runners.poller import StatusPoller
from .runners.retry_orchestrator import RetryOrchestrator
from .snapshots.builder import SnapshotBuilder
from .storage import create_store
from .storage.base import LifecycleStore
from .utils.retry import RetryConfig


logger = logging.getLogger(__name__)


class FineTuneService:
    """
    Owns one instance of each lifecycle component.
    
    Attributes:
        locks: LockManager
        exporter: JsonlTrainingExporter
        submitter: JobSubmitter
        builder: SnapshotBuilder
        orchestrator: RetryOrchestrator
        poller: StatusPoller
    """
    
    def __init__(
        self,
        store: LifecycleStore,
        provider: TrainingProvider,
        notifier: Notifier,
        source: TrainingDataSource,
        config: Optional[FineTuneConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        holder_id: Optional[str] = None,
    ):
        self.config = config or FineTuneConfig()
        self.store = store
        self.provider = provider
        self.notifier = notifier
        self.clock = clock
        
        provider_retry = RetryConfig(
            max_attempts=self.config.poll_max_attempts,
            base_delay_seconds=self.config.poll_base_delay_seconds,
        )
        
        self.locks = LockManager(
            store, ttl_seconds=self.config.lock_ttl_seconds, clock=clock, holder_id=holder_id
        )
        self.exporter = JsonlTrainingExporter(source, min_examples=self.config.min_examples)
        self.submitter = JobSubmitter(
            store,
            provider,
            retry_config=provider_retry,
            default_model=self.config.default_model,
            clock=clock,
            sleep=sleep,
        )
        self.builder = SnapshotBuilder(
            store,
            self.exporter,
            self.submitter,
            self.locks,
            clock=clock,
            default_model=self.config.default_model,
        )
        self.orchestrator = RetryOrchestrator(
            store,
            self.exporter,
            self.submitter,
            self.locks,
            max_retries=self.config.max_retries,
            cooldown_seconds=self.config.cooldown_seconds,
            clock=clock,
        )
        self.poller = StatusPoller(
            store,
            provider,
            notifier,
            orchestrator=self.orchestrator,
            retry_config=provider_retry,
            max_workers=self.config.poll_max_workers,
            max_retries=self.config.max_retries,
            clock=clock,
            sleep=sleep,
        )
    
    @classmethod
    def from_config(
        cls,
        config: FineTuneConfig,
        source: Optional[TrainingDataSource] = None,
    ) -> "FineTuneService":
        """
        Build the production component set.
        
        Raises:
            ConfigError: If the provider API key or the data source is missing
        """
        if not config.provider.api_key:
            raise ConfigError("Provider API key is not configured (set OPENAI_API_KEY)")
        
        if source is None:
            if not config.data_path:
                raise ConfigError("No training data source configured (set FINETUNE_DATA_PATH)")
            source = FileTrainingDataSource(config.data_path)
        
        storage = config.storage
        store = create_store(
            backend=storage.backend,
            db_path=storage.db_path,
            connection_string=storage.connection_string,
            host=storage.host,
            port=storage.port,
            database=storage.database,
            username=storage.username,
            password=storage.password,
            driver=storage.driver,
            schema=storage.schema,
        )
        
        provider = OpenAIFineTuneClient(
            api_key=config.provider.api_key,
            base_url=config.provider.base_url,
            timeout=config.provider.timeout_seconds,
            webhook_url=config.provider.webhook_url,
        )
        
        if config.notifier.email_function_url:
            notifier = EmailFunctionNotifier(
                config.notifier.email_function_url,
                auth_token=config.notifier.auth_token,
                timeout=config.notifier.timeout_seconds,
            )
        else:
            logger.info("No email function configured; notifications will only be logged")
            notifier = LoggingNotifier()
        
        return cls(store, provider, notifier, source, config=config)
    
    def describe_snapshot(self, snapshot_id: str, event_limit: Optional[int] = 20) -> Dict[str, Any]:
        """
        Snapshot with its active lock and newest events.
        
        Raises:
            NotFoundError: Unknown snapshot
        """
        snapshot = self.store.get_snapshot(snapshot_id)
        if snapshot is None:
            raise NotFoundError(f"Snapshot not found: {snapshot_id}")
        lock = self.locks.get_active_lock(snapshot_id)
        return {
            "snapshot": snapshot.to_dict(),
            "lock": lock.to_row() if lock else None,
            "events": [e.to_dict() for e in self.store.list_events(snapshot_id, limit=event_limit)],
        }
    
    def queue_stats(self) -> Dict[str, Any]:
        """Per-status snapshot counts."""
        counts = self.store.get_status_counts()
        return {"total": sum(counts.values()), "by_status": counts}
    
    def close(self) -> None:
        self.provider.close()
        self.store.close()
