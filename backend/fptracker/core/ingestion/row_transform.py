"""
Spreadsheet row parsing and transformation.

Column mapping is intentionally forgiving: every logical field accepts the
header spellings seen in contractor member schedules. Rows without a
structure number are not errors, they are skipped by the caller.

Usage:
    rows = read_workbook_rows(Path("schedule.xlsx"))
    context = ProjectContext(project_id=project.id, sub_project_id=sub_project.id)
    payload = transform_row(rows[0], context, row_number=1)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from uuid import UUID

from openpyxl import load_workbook
from pydantic import BaseModel, ConfigDict

from .errors import RowValidationError

logger = logging.getLogger("fptracker.ingestion.rows")


# Header spelling -> payload field
EXCEL_COLUMN_MAPPING: Dict[str, str] = {
    "Sl No": "serial_no",
    "Serial No": "serial_no",
    "S.No": "serial_no",
    "Structure Number": "structure_number",
    "Structure No": "structure_number",
    "Drawing No": "drawing_no",
    "Drawing Number": "drawing_no",
    "Level": "level",
    "Floor": "level",
    "Member Type": "member_type",
    "Type": "member_type",
    "GridNo": "grid_no",
    "Grid": "grid_no",
    "Grid No": "grid_no",
    "Location": "grid_no",
    "Part Mark No": "part_mark_no",
    "Part Mark": "part_mark_no",
    "Mark No": "part_mark_no",
    "Section Sizes": "section_sizes",
    "Section": "section_sizes",
    "Length in (mm)": "length_mm",
    "Length": "length_mm",
    "Qty": "qty",
    "Quantity": "qty",
    "Section Depth (mm)D": "section_depth_mm",
    "Depth": "section_depth_mm",
    "Flange Width (mm) B": "flange_width_mm",
    "Width": "flange_width_mm",
    "Thickness (mm) t Of Web": "web_thickness_mm",
    "Web Thickness": "web_thickness_mm",
    "Thickness (mm) TOf Flange": "flange_thickness_mm",
    "Flange Thickness": "flange_thickness_mm",
    "Thickness of Fireproofing": "fireproofing_thickness",
    "Fireproofing": "fireproofing_thickness",
    "Surface Area in Sqm": "surface_area_sqm",
    "Area": "surface_area_sqm",
    "Fire Proofing Workflow": "fire_proofing_workflow",
}

_FLOAT_FIELDS = {
    "length_mm",
    "section_depth_mm",
    "flange_width_mm",
    "web_thickness_mm",
    "flange_thickness_mm",
    "fireproofing_thickness",
    "surface_area_sqm",
}

# Fields used to detect a duplicate element inside a project / sub-project
DUPLICATE_KEY_FIELDS = (
    "structure_number",
    "drawing_no",
    "level",
    "member_type",
    "grid_no",
    "part_mark_no",
)


@dataclass(frozen=True)
class ProjectContext:
    """Where transformed rows land and who created them."""

    project_id: UUID
    sub_project_id: Optional[UUID] = None
    created_by: Optional[UUID] = None


class StructuralElementPayload(BaseModel):
    """Candidate structural element built from one spreadsheet row."""

    model_config = ConfigDict(extra="forbid")

    project_id: UUID
    sub_project_id: Optional[UUID] = None
    created_by: Optional[UUID] = None

    serial_no: Optional[str] = None
    structure_number: str
    drawing_no: Optional[str] = None
    level: Optional[str] = None
    member_type: Optional[str] = None
    grid_no: Optional[str] = None
    part_mark_no: Optional[str] = None
    section_sizes: Optional[str] = None

    length_mm: float = 0
    qty: int = 1
    section_depth_mm: float = 0
    flange_width_mm: float = 0
    web_thickness_mm: float = 0
    flange_thickness_mm: float = 0
    fireproofing_thickness: float = 0
    surface_area_sqm: float = 0

    fire_proofing_workflow: Optional[str] = None

    def duplicate_key(self) -> Dict[str, Optional[str]]:
        return {field: getattr(self, field) for field in DUPLICATE_KEY_FIELDS}


def _to_float(value: Any, field: str, row_number: Optional[int]) -> float:
    if value is None or (isinstance(value, str) and not value.strip()):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        raise RowValidationError(f"{field} is not a number: {value!r}", row_number)


def _to_qty(value: Any, row_number: Optional[int]) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        return 1
    try:
        qty = int(float(value))
    except (TypeError, ValueError):
        raise RowValidationError(f"qty is not a number: {value!r}", row_number)
    return qty or 1


def _to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def transform_row(
    row: Mapping[str, Any],
    context: ProjectContext,
    row_number: Optional[int] = None,
) -> Optional[StructuralElementPayload]:
    """
    Map a raw spreadsheet row onto a structural element payload.

    Args:
        row: Header -> cell value mapping
        context: Target project / sub-project
        row_number: 1-based sheet row, used in error messages

    Returns:
        The payload, or None when the row has no structure number

    Raises:
        RowValidationError: If a numeric column holds non-numeric text
    """
    values: Dict[str, Any] = {}
    for header, raw in row.items():
        field = EXCEL_COLUMN_MAPPING.get(str(header).strip()) if header is not None else None
        # First matching spelling wins
        if field is None or values.get(field) is not None:
            continue
        values[field] = raw

    structure_number = _to_text(values.get("structure_number"))
    if not structure_number:
        return None

    data: Dict[str, Any] = {
        "project_id": context.project_id,
        "sub_project_id": context.sub_project_id,
        "created_by": context.created_by,
        "structure_number": structure_number,
        "qty": _to_qty(values.get("qty"), row_number),
    }
    for field in ("serial_no", "drawing_no", "level", "member_type", "grid_no",
                  "part_mark_no", "section_sizes", "fire_proofing_workflow"):
        data[field] = _to_text(values.get(field))
    for field in _FLOAT_FIELDS:
        data[field] = _to_float(values.get(field), field, row_number)

    return StructuralElementPayload(**data)


def read_workbook_rows(path: Path, sheet_name: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Read the first (or named) worksheet into header-keyed row dicts.

    Blank rows are dropped so batch row ranges line up with data rows.
    """
    workbook = load_workbook(path, read_only=True, data_only=True)
    try:
        worksheet = workbook[sheet_name] if sheet_name else workbook.worksheets[0]
        rows_iter = worksheet.iter_rows(values_only=True)
        header = next(rows_iter, None)
        if not header:
            return []
        headers = [str(cell).strip() if cell is not None else None for cell in header]

        rows: List[Dict[str, Any]] = []
        for raw in rows_iter:
            if raw is None or all(cell is None for cell in raw):
                continue
            rows.append({
                headers[i]: raw[i]
                for i in range(min(len(headers), len(raw)))
                if headers[i]
            })
    finally:
        workbook.close()

    logger.info(f"Read {len(rows)} rows from {path.name}")
    return rows
