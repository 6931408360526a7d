"""
Fine-Tune Job Lifecycle Module

This module turns a filtered slice of annotated conversation data into an
external model-training job and drives that job to completion or permanent
failure.

Key components:
- core/: Core types, exceptions, and logging utilities
- snapshots/: Filter hashing and snapshot creation
- locks/: Time-boxed per-snapshot locks
- jobs/: Job status state machine and provider submission
- runners/: Status polling and retry orchestration
- providers/: Training provider clients
- notify/: Outcome notification channels
- export/: Training data export
- storage/: Snapshot, lock, and event persistence
- config/: Configuration management
- api/: HTTP-equivalent request handlers
- cli/: Command-line entry point
- service.py: Component wiring
"""

__version__ = "0.1.0"
