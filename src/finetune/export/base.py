"""
Training data source interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.types import FilterSpec


@dataclass
class ExportPayload:
    """
    A serialized training file ready for upload.
    
    Attributes:
        content: File bytes
        example_count: Number of training examples in the file
        skipped_count: Rows dropped for missing annotation fields
        filename: Upload filename
    """
    content: bytes
    example_count: int
    skipped_count: int = 0
    filename: str = "training.jsonl"


@dataclass
class ExportPreview:
    """
    The rows a filter specification selects, before anything is built.
    
    Attributes:
        filter_hash: Fingerprint of the previewed filters
        total: Number of rows the filters select
        exportable: Selected rows carrying every field a training example needs
        min_examples: Usable rows required to create a snapshot
        rows: The first selected rows, best first
    """
    filter_hash: str
    total: int
    exportable: int
    min_examples: int
    rows: List[Dict[str, Any]] = field(default_factory=list)
    
    @property
    def enough_examples(self) -> bool:
        return self.exportable >= self.min_examples
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "filter_hash": self.filter_hash,
            "annotations": list(self.rows),
            "total": self.total,
            "exportable": self.exportable,
            "min_examples": self.min_examples,
            "enough_examples": self.enough_examples,
        }


class TrainingDataSource(ABC):
    """
    Supplies annotated rows for export and reports when they last changed.
    """
    
    @abstractmethod
    def fetch_rows(self, filter_spec: FilterSpec) -> List[Dict[str, Any]]:
        """Return the rows selected by a filter specification, best first."""
        pass
    
    @abstractmethod
    def latest_mutation_at(self) -> Optional[datetime]:
        """Return when training-relevant data last changed, or None if never."""
        pass
