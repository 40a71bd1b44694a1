"""Per-book results and the run-level tally folded from them."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Optional

from ..state import ItemStatus


class ItemOutcome(str, Enum):
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class ItemResult:
    """What happened to one book during this run."""

    book_id: Optional[int]
    outcome: ItemOutcome
    action: str
    message: str = ""
    status: Optional[ItemStatus] = None


@dataclass(frozen=True, slots=True)
class RunSummary:
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    def add(self, result: ItemResult) -> "RunSummary":
        if result.outcome is ItemOutcome.DONE:
            return replace(self, succeeded=self.succeeded + 1)
        if result.outcome is ItemOutcome.FAILED:
            return replace(self, failed=self.failed + 1)
        return replace(self, skipped=self.skipped + 1)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed + self.skipped

    def as_dict(self) -> Dict[str, int]:
        return {"succeeded": self.succeeded, "failed": self.failed, "skipped": self.skipped}


__all__ = ["ItemOutcome", "ItemResult", "RunSummary"]
