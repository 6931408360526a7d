"""
Unit tests for lifecycle logging helpers.
"""

import json
import logging

from finetune.core.logging import (
    CorrelationContext,
    HumanReadableFormatter,
    StructuredFormatter,
    log_with_context,
)


def make_record(**extra):
    record = logging.LogRecord("finetune.test", logging.INFO, __file__, 1, "Job polled", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:
    """Tests for the log formatters."""
    
    def test_structured_includes_correlation_fields(self):
        formatter = StructuredFormatter(include_timestamp=False)
        
        entry = json.loads(formatter.format(make_record(snapshot_id="snap-1", job_id="ftjob-1")))
        
        assert entry == {
            "level": "INFO",
            "logger": "finetune.test",
            "message": "Job polled",
            "snapshot_id": "snap-1",
            "job_id": "ftjob-1",
        }
    
    def test_human_readable_suffix(self):
        formatter = HumanReadableFormatter(include_timestamp=False)
        
        line = formatter.format(make_record(snapshot_id="snap-1", retry_origin="webhook"))
        
        assert line == "finetune.test - INFO - Job polled [snapshot_id=snap-1 retry_origin=webhook]"


class TestCorrelationContext:
    """Tests for CorrelationContext."""
    
    def test_nested_contexts_restore(self):
        assert CorrelationContext.get_current() == {}
        
        with CorrelationContext(snapshot_id="snap-1"):
            with CorrelationContext(snapshot_id="snap-1", job_id="ftjob-1"):
                assert CorrelationContext.get_current() == {"snapshot_id": "snap-1", "job_id": "ftjob-1"}
            assert CorrelationContext.get_current() == {"snapshot_id": "snap-1"}
        
        assert CorrelationContext.get_current() == {}
    
    def test_log_with_context_attaches_fields(self, caplog):
        logger = logging.getLogger("finetune.test")
        
        with caplog.at_level(logging.INFO, logger="finetune.test"):
            with CorrelationContext(snapshot_id="snap-1"):
                log_with_context(logger, logging.INFO, "Retrying", attempt=2)
        
        record = caplog.records[-1]
        assert record.snapshot_id == "snap-1"
        assert record.attempt == 2
