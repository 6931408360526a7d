"""
File-backed training data source.

Reads annotated rows from a JSONL file and applies filter predicates in
memory. Used by the CLI and for local runs; production deployments plug in
a database-backed TrainingDataSource.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..core.exceptions import ValidationError
from ..core.types import FilterSpec
from ..core.utils import parse_iso
from .base import TrainingDataSource


logger = logging.getLogger(__name__)


# Filter key -> row column for simple membership predicates
_MEMBERSHIP_COLUMNS = {
    "users": "user_id",
    "messageRole": "message_role",
    "reviewedBy": "reviewed_by",
    "sourceTypes": "source_type",
    "emotions": "emotion",
    "tones": "tone",
    "topics": "topic",
    "goals": "goal",
}


def _timestamp(value: Any) -> Optional[datetime]:
    try:
        return parse_iso(value)
    except (TypeError, ValueError):
        return None


def _in_range(value: Any, bounds: List[float]) -> bool:
    return isinstance(value, (int, float)) and bounds[0] <= value <= bounds[1]


def apply_filters(
    rows: Iterable[Dict[str, Any]],
    filter_spec: FilterSpec,
    since: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """
    Select rows matching a filter specification, ordered by score descending.
    
    Args:
        rows: Candidate rows
        filter_spec: Predicates to apply
        since: Cut-off for ``includeCorrected`` (annotations updated after it)
    """
    f = filter_spec.predicates
    selected = []
    
    for row in rows:
        if any(
            f.get(key) and row.get(column) not in f[key]
            for key, column in _MEMBERSHIP_COLUMNS.items()
        ):
            continue
        if f.get("supportingTherapists"):
            therapists = set(row.get("supporting_therapist_ids") or [])
            if not set(f["supportingTherapists"]) <= therapists:
                continue
        if f.get("flagReasons") and not set(f["flagReasons"]) & set(row.get("flag_reasons") or []):
            continue
        
        # Full-width ranges select everything
        intensity = f.get("intensity")
        if intensity and (intensity[0] > 0.1 or intensity[1] < 1):
            if not _in_range(row.get("intensity"), intensity):
                continue
        alignment = f.get("alignment_score")
        if alignment and (alignment[0] > 0 or alignment[1] < 1):
            if not _in_range(row.get("alignment_score"), alignment):
                continue
        agreement = f.get("agreement")
        if agreement and not _in_range(row.get("agreement"), agreement):
            continue
        
        if f.get("includeCorrected") and since is not None:
            updated = _timestamp(row.get("annotation_updated_at"))
            if updated is None or updated < since:
                continue
        if f.get("highRiskOnly"):
            if row.get("tone") != "negative" or not _in_range(row.get("intensity"), [0.8, float("inf")]):
                continue
        if f.get("flaggedOnly") and not row.get("flagged"):
            continue
        
        tagged_at = _timestamp(row.get("tagged_at"))
        if f.get("startDate") and (tagged_at is None or tagged_at < _timestamp(f["startDate"])):
            continue
        if f.get("endDate") and (tagged_at is None or tagged_at > _timestamp(f["endDate"])):
            continue
        if f.get("scoreCutoff") is not None:
            score = row.get("score")
            if not isinstance(score, (int, float)) or score < f["scoreCutoff"]:
                continue
        
        selected.append(row)
    
    selected.sort(key=lambda r: r.get("score") or 0, reverse=True)
    
    min_frequency = f.get("minEmotionFrequency")
    if min_frequency:
        counts: Dict[str, int] = {}
        for row in selected:
            counts[row.get("emotion")] = counts.get(row.get("emotion"), 0) + 1
        selected = [r for r in selected if counts[r.get("emotion")] >= min_frequency]
    
    if f.get("topN"):
        selected = selected[: f["topN"]]
    
    return selected


class FileTrainingDataSource(TrainingDataSource):
    """
    Training rows stored one JSON object per line.
    
    The file's modification time is the data-mutation timestamp.
    """
    
    def __init__(self, path: Path, corrected_since: Optional[datetime] = None):
        self.path = Path(path)
        self.corrected_since = corrected_since
    
    def _read_rows(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            raise ValidationError(f"Training data file not found: {self.path}")
        
        rows = []
        with open(self.path, "r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    rows.append(json.loads(line))
                except json.JSONDecodeError as e:
                    logger.warning(f"Skipping malformed row {line_number} in {self.path}: {e}")
        return rows
    
    def fetch_rows(self, filter_spec: FilterSpec) -> List[Dict[str, Any]]:
        rows = apply_filters(self._read_rows(), filter_spec, since=self.corrected_since)
        logger.debug(f"Selected {len(rows)} rows from {self.path}")
        return rows
    
    def latest_mutation_at(self) -> Optional[datetime]:
        if not self.path.exists():
            return None
        return datetime.fromtimestamp(self.path.stat().st_mtime, tz=timezone.utc)
