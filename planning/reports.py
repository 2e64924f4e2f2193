"""
Result accumulators for batch operations.

Batch operations (catalog import, template mapping) never abort on a single
bad item.  They build one of these reports as they go and return it whole;
the caller decides whether a partial result needs a re-run.

Issue categories (for ItemIssue.category):
    not_found       a selected catalog id does not exist or is inactive
    wrong_parent    a selected node is not under the node it was selected with
    write_failed    the store rejected a row
    unmatched       no catalog entry matched a template item
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any


@dataclass
class ItemIssue:
    """One item that could not be processed, with a machine-readable category."""

    category: str
    detail: str
    item: str = ""

    def to_dict(self) -> dict[str, str]:
        d = {"category": self.category, "detail": self.detail}
        if self.item:
            d["item"] = self.item
        return d


@dataclass
class BatchReport:
    """What a batch operation did, skipped and failed on."""

    operation: str
    status: str = "not_started"     # started | completed | partial | failed
    items_requested: int = 0
    issues: list[ItemIssue] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    _started: float = field(default=0.0, repr=False)

    def start(self) -> None:
        self.status = "started"
        self._started = time.monotonic()

    def add_issue(self, category: str, detail: str, item: str = "") -> None:
        self.issues.append(ItemIssue(category=category, detail=detail, item=item))

    @property
    def errors(self) -> list[str]:
        return [i.detail for i in self.issues]

    def issue_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for issue in self.issues:
            counts[issue.category] = counts.get(issue.category, 0) + 1
        return counts

    def finish(self) -> None:
        self.elapsed_seconds = time.monotonic() - self._started if self._started else 0.0
        self.status = "partial" if self.issues else "completed"

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "operation": self.operation,
            "status": self.status,
            "items_requested": self.items_requested,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }
        if self.issues:
            d["issues"] = [i.to_dict() for i in self.issues]
            d["issue_counts"] = self.issue_counts()
        return d


@dataclass
class ImportResult(BatchReport):
    """Counts produced by ``import_catalog_selection``."""

    operation: str = "catalog_import"
    partidas_created: int = 0
    conceptos_created: int = 0
    mappings_created: int = 0
    partida_ids: list[int] = field(default_factory=list)

    def console_summary(self) -> str:
        parts = [
            f"{self.partidas_created} partidas",
            f"{self.conceptos_created} conceptos",
            f"{self.mappings_created} mappings",
        ]
        if self.issues:
            counts = ", ".join(f"{v} {k.replace('_', ' ')}"
                               for k, v in sorted(self.issue_counts().items()))
            parts.append(f"{len(self.issues)} issues ({counts})")
        return " | ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d.update({
            "partidas_created": self.partidas_created,
            "conceptos_created": self.conceptos_created,
            "mappings_created": self.mappings_created,
            "partida_ids": list(self.partida_ids),
            "errors": self.errors,
        })
        return d
