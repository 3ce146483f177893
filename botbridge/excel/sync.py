"""Excel workbook → platform tables import.

Each mapped sheet's first row is its header. Existing tables keep their
schema (and any KB links pointing at them): their rows are cleared and
replaced. Missing tables are created with column types inferred from the
data.
"""

from __future__ import annotations

import io
import json
import logging
import math
import zipfile
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from botbridge.exceptions import ConfigurationError, IntegrationError, NotFoundError, RemoteError
from botbridge.remote import HttpAdapter

if TYPE_CHECKING:
    import httpx

    from botbridge.config import Settings
    from botbridge.sharepoint.client import SharepointClient

logger = logging.getLogger(__name__)

INSERT_BATCH_SIZE = 50


@dataclass
class ProcessedSheet:
    sheet_name: str
    table_name: str
    row_count: int


def parse_sheet_table_mapping(raw: str) -> dict[str, str]:
    """Parse ``{"Sheet1": "table1"}`` or ``"Sheet1:table1,Sheet2:table2"``."""
    text = raw.strip()
    if text.startswith("{"):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            msg = f"Invalid sheet/table mapping JSON: {exc}"
            raise ValueError(msg) from exc
        if not isinstance(parsed, dict):
            msg = "Sheet/table mapping JSON must be an object"
            raise ValueError(msg)
        if not all(isinstance(v, str) and v for v in parsed.values()):
            msg = "Sheet/table mapping values must be non-empty table names"
            raise ValueError(msg)
        return {str(sheet): table for sheet, table in parsed.items()}

    mapping: dict[str, str] = {}
    for pair in text.split(","):
        sheet, _, table = (part.strip() for part in pair.partition(":"))
        if sheet and table:
            mapping[sheet] = table
    if not mapping:
        msg = "Invalid sheet/table mapping. Use JSON or comma-separated Sheet:table pairs"
        raise ValueError(msg)
    return mapping


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def as_number(value: Any) -> int | float | None:
    """Return ``value`` as a number, or None when it is not numeric."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        if not math.isfinite(number):
            return None
        return int(number) if number.is_integer() and "." not in value else number
    return None


def infer_column_types(headers: list[str], rows: list[list[Any]]) -> dict[str, str]:
    """Infer ``number`` or ``string`` per header.

    A column is numeric when it has data and every non-blank value parses as
    a number. Blank headers are dropped.
    """
    properties: dict[str, str] = {}
    for index, header in enumerate(headers):
        if not header:
            continue
        values = [row[index] for row in rows if index < len(row) and not _is_blank(row[index])]
        numeric = bool(values) and all(as_number(v) is not None for v in values)
        properties[header] = "number" if numeric else "string"
    return properties


def coerce_row(headers: list[str], row: list[Any], schema: dict[str, str]) -> dict[str, Any]:
    """Convert a sheet row to a table row following the table schema."""
    record: dict[str, Any] = {}
    for index, header in enumerate(headers):
        if not header:
            continue
        value = row[index] if index < len(row) else None
        numeric = schema.get(header) == "number"
        if _is_blank(value):
            record[header] = None if numeric else ""
        elif numeric:
            number = as_number(value)
            record[header] = value if number is None else number
        else:
            record[header] = str(value)
    return record


class TablesApi(HttpAdapter):
    """Platform tables API authenticated with a personal access token."""

    def __init__(
        self,
        base_url: str,
        token: str,
        bot_id: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(http_client=http_client, timeout=timeout)
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"bearer {token}", "x-bot-id": bot_id}

    @classmethod
    def from_settings(
        cls, settings: Settings, http_client: httpx.AsyncClient | None = None
    ) -> TablesApi:
        if not settings.tables_personal_access_token:
            msg = "TABLES_PERSONAL_ACCESS_TOKEN is required for the tables API"
            raise ConfigurationError(msg)
        return cls(
            settings.tables_api_url,
            settings.tables_personal_access_token,
            settings.platform_bot_id,
            http_client=http_client,
            timeout=settings.http_timeout_seconds,
        )

    async def _call(self, method: str, path: str, action: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._send(
            method, f"{self._base_url}{path}", action=action, headers=self._headers, **kwargs
        )
        return response.json() if response.content else {}

    async def find_table(self, name: str) -> dict[str, Any] | None:
        data = await self._call("GET", "", "List tables")
        for table in data.get("tables") or []:
            if table.get("name") == name:
                return table
        return None

    async def create_table(self, name: str, properties: dict[str, str]) -> str:
        data = await self._call(
            "POST",
            "",
            f"Create table {name}",
            json={
                "name": name,
                "schema": {
                    "type": "object",
                    "properties": {col: {"type": kind} for col, kind in properties.items()},
                },
            },
        )
        table_id = (data.get("table") or {}).get("id")
        if not table_id:
            msg = f"Creating table {name} returned no table id"
            raise RemoteError(msg)
        return str(table_id)

    async def get_table(self, table_id: str) -> dict[str, Any]:
        data = await self._call("GET", f"/{table_id}", f"Get table {table_id}")
        return data.get("table") or {}

    async def delete_all_rows(self, table_id: str) -> None:
        await self._call(
            "POST",
            f"/{table_id}/rows/delete",
            f"Clear table {table_id}",
            json={"deleteAllRows": True},
        )

    async def insert_rows(self, table_id: str, rows: list[dict[str, Any]]) -> int:
        for start in range(0, len(rows), INSERT_BATCH_SIZE):
            batch = rows[start : start + INSERT_BATCH_SIZE]
            await self._call(
                "POST", f"/{table_id}/rows", f"Insert rows into {table_id}", json={"rows": batch}
            )
            logger.info(
                "Inserted %d/%d rows into table %s", start + len(batch), len(rows), table_id
            )
        return len(rows)


def read_sheets(content: bytes) -> dict[str, list[list[Any]]]:
    """Load every sheet of a workbook as a list of value rows."""
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile) as exc:
        msg = f"Not an Excel workbook: {exc}"
        raise ValueError(msg) from exc
    try:
        return {
            sheet.title: [list(row) for row in sheet.iter_rows(values_only=True)]
            for sheet in workbook.worksheets
        }
    finally:
        workbook.close()


class ExcelTableSync:
    """Imports the sheets of a SharePoint-hosted workbook into tables."""

    def __init__(self, sharepoint: SharepointClient, tables: TablesApi) -> None:
        self._sharepoint = sharepoint
        self._tables = tables

    async def _download(self, file_url: str) -> bytes:
        try:
            return await self._sharepoint.get_file_content_by_url(file_url)
        except NotFoundError:
            libraries = await self._sharepoint.list_libraries()
            logger.warning(
                "Workbook %s not found. Available libraries: %s",
                file_url,
                ", ".join(f"{lib.name} ({lib.web_url})" for lib in libraries),
            )
            raise

    async def sync_excel_file(
        self,
        file_url: str,
        mapping: dict[str, str],
        *,
        process_all_sheets: bool = False,
    ) -> list[ProcessedSheet]:
        """Replace the rows of each mapped table with its sheet's rows.

        With ``process_all_sheets`` a failing sheet is logged and skipped;
        otherwise the first failure aborts the import.
        """
        sheets = read_sheets(await self._download(file_url))
        logger.info("Workbook %s has sheets: %s", file_url, ", ".join(sheets))
        missing = [name for name in mapping if name not in sheets]
        if missing:
            msg = (
                f"Sheets not found in workbook: {', '.join(missing)}. "
                f"Available sheets: {', '.join(sheets)}"
            )
            raise ConfigurationError(msg)

        processed: list[ProcessedSheet] = []
        for sheet_name, table_name in mapping.items():
            try:
                result = await self._sync_sheet(sheet_name, table_name, sheets[sheet_name])
            except (IntegrationError, ValueError):
                if not process_all_sheets:
                    raise
                logger.exception("Failed to import sheet %s; continuing", sheet_name)
                continue
            if result is not None:
                processed.append(result)
        logger.info("Imported %d sheet(s) from %s", len(processed), file_url)
        return processed

    async def _sync_sheet(
        self, sheet_name: str, table_name: str, values: list[list[Any]]
    ) -> ProcessedSheet | None:
        if not values or not any(not _is_blank(v) for v in values[0]):
            logger.warning("Sheet %s has no header row, skipping", sheet_name)
            return None
        headers = ["" if _is_blank(h) else str(h).strip() for h in values[0]]
        rows = [row for row in values[1:] if any(not _is_blank(v) for v in row)]

        table = await self._tables.find_table(table_name)
        if table is not None:
            table_id = str(table["id"])
            try:
                await self._tables.delete_all_rows(table_id)
            except RemoteError:
                # The table is kept so KB links survive; rows may be duplicated.
                logger.exception("Could not clear table %s; inserting anyway", table_name)
            details = await self._tables.get_table(table_id)
            schema = {
                col: str(column.get("type", "string"))
                for col, column in ((details.get("schema") or {}).get("properties") or {}).items()
            }
        else:
            schema = infer_column_types(headers, rows)
            if not schema:
                msg = f"Sheet {sheet_name} has no usable column headers"
                raise ValueError(msg)
            table_id = await self._tables.create_table(table_name, schema)
            logger.info("Created table %s (%s)", table_name, table_id)

        records = [coerce_row(headers, row, schema) for row in rows]
        if not records:
            logger.info("No data rows in sheet %s", sheet_name)
            return None
        count = await self._tables.insert_rows(table_id, records)
        return ProcessedSheet(sheet_name, table_name, count)
