"""Excel import request/response schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ExcelSyncRequest(BaseModel):
    """Request to import workbook sheets into tables.

    ``sheet_table_mapping`` is a JSON object or ``Sheet1:table1,Sheet2:table2``.
    """

    file_url: str = Field(min_length=1)
    sheet_table_mapping: str = Field(min_length=1)
    process_all_sheets: bool = False


class ProcessedSheetResponse(BaseModel):
    sheet_name: str
    table_name: str
    row_count: int


class ExcelSyncResponse(BaseModel):
    processed_sheets: list[ProcessedSheetResponse]
