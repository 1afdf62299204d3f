"""
Running statistics and cost estimate for an extraction job.
"""

from ..models import ExtractionStatsSnapshot


class ExtractionStats:
    """
    Per-job counters.

    A snapshot is persisted on the job after every page so a resumed run
    keeps counting from where the previous run stopped.
    """

    def __init__(self, cost_per_page: float = 0.01, emit_interval: int = 5):
        self.cost_per_page = cost_per_page
        self.emit_interval = max(1, emit_interval)
        self.pages_processed = 0
        self.pages_skipped = 0
        self.recipes_extracted = 0
        self.needs_review = 0
        self.duplicates_removed = 0
        self.failed_pages = 0

    @classmethod
    def from_snapshot(
        cls,
        snapshot: dict | None,
        cost_per_page: float = 0.01,
        emit_interval: int = 5,
    ) -> "ExtractionStats":
        stats = cls(cost_per_page=cost_per_page, emit_interval=emit_interval)
        if snapshot:
            data = ExtractionStatsSnapshot.model_validate(snapshot)
            stats.pages_processed = data.pages_processed
            stats.pages_skipped = data.pages_skipped
            stats.recipes_extracted = data.recipes_extracted
            stats.needs_review = data.needs_review
            stats.duplicates_removed = data.duplicates_removed
            stats.failed_pages = data.failed_pages
        return stats

    @property
    def estimated_cost(self) -> float:
        """Every page that reached the model is billed, failed or not."""
        return round(self.pages_processed * self.cost_per_page, 4)

    def record_page(self) -> None:
        self.pages_processed += 1

    def record_skipped(self) -> None:
        self.pages_skipped += 1

    def record_failed(self) -> None:
        self.failed_pages += 1

    def record_recipe(self, needs_review: bool) -> None:
        self.recipes_extracted += 1
        if needs_review:
            self.needs_review += 1

    def remove_recipe(self, needs_review: bool) -> None:
        """Undo `record_recipe` for a row replaced by a merged one."""
        self.recipes_extracted -= 1
        if needs_review:
            self.needs_review -= 1

    def record_duplicate(self) -> None:
        self.duplicates_removed += 1

    def should_emit(self) -> bool:
        """True every `emit_interval` processed pages."""
        return self.pages_processed > 0 and self.pages_processed % self.emit_interval == 0

    def snapshot(self) -> ExtractionStatsSnapshot:
        return ExtractionStatsSnapshot(
            pages_processed=self.pages_processed,
            pages_skipped=self.pages_skipped,
            recipes_extracted=self.recipes_extracted,
            needs_review=self.needs_review,
            duplicates_removed=self.duplicates_removed,
            failed_pages=self.failed_pages,
            estimated_cost_usd=self.estimated_cost,
        )

    def summary_line(self) -> str:
        """One-line summary appended to the processing log at completion."""
        return (
            f"=== SUMMARY: {self.pages_processed} pages, {self.pages_skipped} skipped, "
            f"{self.recipes_extracted} recipes, {self.needs_review} needs review, "
            f"{self.duplicates_removed} duplicates, {self.failed_pages} failed, "
            f"cost ~${self.estimated_cost:.2f} ==="
        )
