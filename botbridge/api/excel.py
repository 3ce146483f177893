"""Excel → tables import endpoint."""

from __future__ import annotations

import logging
from typing import Annotated

import httpx
from fastapi import APIRouter, Depends

from botbridge.api.deps import (
    SharepointClientFactory,
    get_http_client,
    get_settings,
    get_sharepoint_client_factory,
    require_admin,
)
from botbridge.config import Settings
from botbridge.excel.sync import ExcelTableSync, TablesApi, parse_sheet_table_mapping
from botbridge.schemas.excel import ExcelSyncRequest, ExcelSyncResponse, ProcessedSheetResponse
from botbridge.services.sharepoint_service import default_client_factory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/excel", tags=["excel"])


@router.post("/sync", response_model=ExcelSyncResponse)
async def sync_excel(
    _: Annotated[None, Depends(require_admin)],
    settings: Annotated[Settings, Depends(get_settings)],
    factory: Annotated[SharepointClientFactory | None, Depends(get_sharepoint_client_factory)],
    http_client: Annotated[httpx.AsyncClient | None, Depends(get_http_client)],
    body: ExcelSyncRequest,
) -> ExcelSyncResponse:
    """Import the mapped sheets of a SharePoint workbook into tables."""
    mapping = parse_sheet_table_mapping(body.sheet_table_mapping)
    tables = TablesApi.from_settings(settings, http_client)
    # The workbook URL names its own library, so the client needs none.
    sharepoint = (factory or default_client_factory(settings))("")
    processed = await ExcelTableSync(sharepoint, tables).sync_excel_file(
        body.file_url, mapping, process_all_sheets=body.process_all_sheets
    )
    return ExcelSyncResponse(
        processed_sheets=[
            ProcessedSheetResponse(
                sheet_name=sheet.sheet_name, table_name=sheet.table_name, row_count=sheet.row_count
            )
            for sheet in processed
        ]
    )
