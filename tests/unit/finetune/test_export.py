"""
Unit tests for the training export.

Tests for:
- apply_filters predicate semantics and ordering
- JsonlTrainingExporter output and minimum size
- FileTrainingDataSource reading
"""

import json
import os
from datetime import datetime, timezone

import pytest

from finetune.core.exceptions import ValidationError
from finetune.core.types import FilterSpec
from finetune.export.file_source import FileTrainingDataSource, apply_filters
from finetune.export.jsonl import (
    SYSTEM_PROMPT,
    JsonlTrainingExporter,
    is_exportable,
    row_to_example,
    sanitize_text,
)

from fakes import InMemorySource, make_rows


def select(rows, **predicates):
    return apply_filters(rows, FilterSpec(predicates))


class TestApplyFilters:
    """Tests for apply_filters."""
    
    def test_orders_by_score_descending(self):
        rows = make_rows(3)
        
        assert [r["score"] for r in select(rows)] == [2, 1, 0]
    
    def test_membership_predicates(self):
        rows = make_rows(2) + make_rows(2, emotion="anger", tone="negative")
        
        assert {r["emotion"] for r in select(rows, emotions=["anger"])} == {"anger"}
        assert len(select(rows, tones=["positive"], emotions=["anger"])) == 0
    
    def test_empty_membership_list_selects_everything(self):
        assert len(select(make_rows(4), emotions=[])) == 4
    
    def test_intensity_range(self):
        rows = [
            {**make_rows(1)[0], "intensity": 0.3},
            {**make_rows(1)[0], "intensity": 0.9},
        ]
        
        assert [r["intensity"] for r in select(rows, intensity=[0.5, 1.0])] == [0.9]
        assert len(select(rows, intensity=[0.1, 1])) == 2
    
    def test_high_risk_only(self):
        rows = (
            make_rows(1, tone="negative", intensity=0.85)
            + make_rows(1, tone="negative", intensity=0.4)
            + make_rows(1, tone="positive", intensity=0.95)
        )
        
        selected = select(rows, highRiskOnly=True)
        
        assert len(selected) == 1
        assert selected[0]["intensity"] == 0.85
    
    def test_supporting_therapists_must_all_match(self):
        rows = [
            {**make_rows(1)[0], "supporting_therapist_ids": ["t1", "t2"]},
            {**make_rows(1)[0], "supporting_therapist_ids": ["t1"]},
        ]
        
        assert len(select(rows, supportingTherapists=["t1", "t2"])) == 1
    
    def test_flag_reasons_any_match(self):
        rows = [
            {**make_rows(1)[0], "flag_reasons": ["self_harm"]},
            {**make_rows(1)[0], "flag_reasons": ["spam"]},
            make_rows(1)[0],
        ]
        
        assert len(select(rows, flagReasons=["self_harm", "abuse"])) == 1
    
    def test_date_window(self):
        rows = [
            {**make_rows(1)[0], "tagged_at": "2026-03-01T00:00:00Z"},
            {**make_rows(1)[0], "tagged_at": "2026-07-01T00:00:00Z"},
            {**make_rows(1)[0], "tagged_at": None},
        ]
        
        selected = select(rows, startDate="2026-02-01", endDate="2026-04-01")
        
        assert [r["tagged_at"] for r in selected] == ["2026-03-01T00:00:00Z"]
    
    def test_score_cutoff_and_top_n(self):
        rows = make_rows(10)
        
        selected = select(rows, scoreCutoff=5, topN=3)
        
        assert [r["score"] for r in selected] == [9, 8, 7]
    
    def test_min_emotion_frequency(self):
        rows = make_rows(3) + make_rows(1, emotion="fear")
        
        selected = select(rows, minEmotionFrequency=2)
        
        assert {r["emotion"] for r in selected} == {"joy"}
    
    def test_include_corrected_uses_cutoff(self):
        rows = [
            {**make_rows(1)[0], "annotation_updated_at": "2026-10-10T00:00:00Z"},
            {**make_rows(1)[0], "annotation_updated_at": "2026-09-01T00:00:00Z"},
            make_rows(1)[0],
        ]
        since = datetime(2026, 10, 1, tzinfo=timezone.utc)
        
        selected = apply_filters(rows, FilterSpec({"includeCorrected": True}), since=since)
        
        assert len(selected) == 1


class TestJsonlExport:
    """Tests for the JSONL exporter."""
    
    def test_sanitize_text(self):
        assert sanitize_text("  hello\x00\n\n world\t ") == "hello world"
    
    def test_is_exportable_requires_annotations(self):
        row = make_rows(1)[0]
        
        assert is_exportable(row)
        assert not is_exportable({**row, "topic": None})
        assert not is_exportable({**row, "intensity": "high"})
        assert not is_exportable({**row, "content": ""})
    
    def test_row_to_example(self):
        row = {**make_rows(1)[0], "note": "check in weekly", "intensity": 0.5}
        
        example = row_to_example(row)
        
        system, user, assistant = example["messages"]
        assert system == {"role": "system", "content": SYSTEM_PROMPT}
        assert user == {"role": "user", "content": "Message number 0"}
        assert assistant["role"] == "assistant"
        assert "intensity: 0.50" in assistant["content"]
        assert "note: check in weekly" in assistant["content"]
        assert assistant["content"].endswith("source: auto")
    
    def test_build_skips_incomplete_rows(self):
        rows = make_rows(12) + make_rows(3, emotion=None)
        exporter = JsonlTrainingExporter(InMemorySource(rows))
        
        payload = exporter.build(FilterSpec({}))
        
        lines = payload.content.decode("utf-8").split("\n")
        assert payload.example_count == 12
        assert payload.skipped_count == 3
        assert len(lines) == 12
        assert all("messages" in json.loads(line) for line in lines)
    
    def test_build_rejects_small_exports(self):
        exporter = JsonlTrainingExporter(InMemorySource(make_rows(9)))
        
        with pytest.raises(ValidationError, match=r"at least 10 examples \(found 9\)"):
            exporter.build(FilterSpec({}))
    
    def test_custom_minimum_and_filename(self):
        exporter = JsonlTrainingExporter(InMemorySource(make_rows(2)), min_examples=2)
        
        payload = exporter.build(FilterSpec({}), filename="snap.jsonl")
        
        assert payload.filename == "snap.jsonl"
        assert payload.example_count == 2


class TestFileTrainingDataSource:
    """Tests for the JSONL file source."""
    
    def test_reads_and_filters_rows(self, tmp_path):
        path = tmp_path / "rows.jsonl"
        rows = make_rows(2) + make_rows(1, emotion="anger")
        path.write_text(
            "\n".join(json.dumps(r) for r in rows) + "\n\nnot json\n",
            encoding="utf-8",
        )
        source = FileTrainingDataSource(path)
        
        selected = source.fetch_rows(FilterSpec({"emotions": ["joy"]}))
        
        assert len(selected) == 2
    
    def test_mutation_time_is_file_mtime(self, tmp_path):
        path = tmp_path / "rows.jsonl"
        path.write_text("{}\n", encoding="utf-8")
        mtime = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc).timestamp()
        os.utime(path, (mtime, mtime))
        
        source = FileTrainingDataSource(path)
        
        assert source.latest_mutation_at() == datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
    
    def test_missing_file(self, tmp_path):
        source = FileTrainingDataSource(tmp_path / "missing.jsonl")
        
        assert source.latest_mutation_at() is None
        with pytest.raises(ValidationError, match="not found"):
            source.fetch_rows(FilterSpec({}))
