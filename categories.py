from __future__ import annotations

import csv
import logging
import random
from typing import List, Optional

from game_errors import EmptyImport, InvalidImportFormat, StoreFailure
from game_models import ROUND_TYPES, CategoryEntry
from game_store import TABLE_CATEGORIES, GameStore, eq_or_null
from round_timer import now_ms

logger = logging.getLogger(__name__)

CATEGORY_COLUMN = "category"
DESCRIPTION_COLUMN = "image_descr"


def _parse_line(line: str) -> List[str]:
    return next(csv.reader([line]), [])


def parse_category_csv(csv_text: str) -> List[dict]:
    """Parse an admin upload into ``{"round_type", "image_descr"}`` rows.

    Bad rows are skipped with a warning. Missing columns or an upload with no
    usable rows reject the whole file.
    """
    normalized = str(csv_text or "").replace("\r\n", "\n").replace("\r", "\n")
    lines = [line.strip() for line in normalized.split("\n") if line.strip()]
    if not lines:
        raise EmptyImport("CSV file is empty.")

    header = _parse_line(lines[0])
    header_lower = [column.strip().lower() for column in header]
    if CATEGORY_COLUMN not in header_lower or DESCRIPTION_COLUMN not in header_lower:
        raise InvalidImportFormat(
            f'CSV must contain "{CATEGORY_COLUMN}" and "{DESCRIPTION_COLUMN}" columns. '
            f"Found columns: {', '.join(header)}",
            details={"columns": header},
        )
    if len(lines) < 2:
        raise EmptyImport("CSV file must contain a header row and at least one data row.")

    category_index = header_lower.index(CATEGORY_COLUMN)
    descr_index = header_lower.index(DESCRIPTION_COLUMN)
    needed = max(category_index, descr_index) + 1

    rows = []
    for line_number, line in enumerate(lines[1:], start=2):
        try:
            fields = _parse_line(line)
        except csv.Error as exc:
            logger.warning("Category CSV row %s could not be parsed: %s", line_number, exc)
            continue

        if len(fields) < needed:
            logger.warning(
                "Category CSV row %s has %s columns, expected at least %s.",
                line_number,
                len(fields),
                needed,
            )
            continue

        round_type = fields[category_index].strip().lower()
        image_descr = fields[descr_index].strip()
        if round_type and round_type not in ROUND_TYPES:
            logger.warning(
                'Category CSV row %s has invalid category "%s".', line_number, round_type
            )
            continue
        if not round_type or not image_descr:
            logger.warning(
                "Category CSV row %s has an empty category or description.", line_number
            )
            continue
        rows.append({"round_type": round_type, "image_descr": image_descr})

    if not rows:
        raise EmptyImport("No valid data rows found in CSV file.")
    return rows


class CategoryBank:
    """Admin-curated prompt pool, shared by every session."""

    BATCH_SIZE = 50

    def __init__(self, store: GameStore, rng: Optional[random.Random] = None):
        self.store = store
        self.rng = rng or random.Random()

    def list_categories(self, round_type: Optional[str] = None) -> List[CategoryEntry]:
        filters = []
        if round_type:
            filters.append(eq_or_null("round_type", round_type))
        rows = self.store.select(TABLE_CATEGORIES, filters, order_by="-uploaded_at")
        return [CategoryEntry.from_row(row) for row in rows]

    def pick_prompt(self, round_type: Optional[str]) -> Optional[str]:
        """Uniform pick among entries for ``round_type`` or with no tier at all."""
        try:
            entries = self.list_categories(round_type)
        except StoreFailure as exc:
            logger.warning("Could not load categories for %s rounds: %s", round_type, exc)
            return None
        if not entries:
            logger.warning("No categories found for round type: %s", round_type)
            return None
        return self.rng.choice(entries).image_descr

    def import_csv(self, csv_text: str) -> dict:
        rows = parse_category_csv(csv_text)
        uploaded_at = now_ms()
        inserted: List[CategoryEntry] = []

        for start in range(0, len(rows), self.BATCH_SIZE):
            batch_number = start // self.BATCH_SIZE + 1
            batch = [
                {
                    "round_type": row["round_type"],
                    "image_descr": row["image_descr"],
                    "uploaded_at": uploaded_at,
                }
                for row in rows[start : start + self.BATCH_SIZE]
            ]
            logger.info(
                "Inserting category batch %s, rows %s to %s",
                batch_number,
                start + 1,
                start + len(batch),
            )
            try:
                written = self.store.insert(TABLE_CATEGORIES, batch)
            except StoreFailure as exc:
                logger.error("Category batch %s failed: %s", batch_number, exc)
                raise StoreFailure(
                    f"Database error: {exc.message} Batch {batch_number} failed.",
                    details={
                        "failed_batch": batch_number,
                        "inserted_count": len(inserted),
                        "total_rows": len(rows),
                    },
                ) from exc
            inserted.extend(CategoryEntry.from_row(row) for row in written)

        return {
            "count": len(rows),
            "message": f"Successfully uploaded {len(rows)} category descriptions",
            "categories": inserted,
        }
