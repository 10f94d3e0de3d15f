"""Google Drive and Sheets tools.

Each executor receives an authenticated ``GoogleWorkspaceClient`` and
its parsed parameters, performs one logical operation and returns a
JSON-serializable result for the model.

Sheets errors are translated so the model can react correctly:
404 means the id is wrong (list the files again), 403 means the user
must grant access.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import Field

from agent_workspace.config import MAX_FILE_CONTENT_CHARS
from agent_workspace.errors import (
    SheetAccessDeniedError,
    SheetNotFoundError,
    UnsupportedFileTypeError,
)
from agent_workspace.services.google_client import GoogleAPIError, GoogleWorkspaceClient
from agent_workspace.services.vault import GOOGLE
from agent_workspace.tools.base import ToolParams, ToolSpec

logger = logging.getLogger(__name__)

GOOGLE_APPS_PREFIX = "application/vnd.google-apps."

# Native Google types and the text representation they are exported as
EXPORT_MIME_TYPES = {
    "application/vnd.google-apps.document": "text/plain",
    "application/vnd.google-apps.spreadsheet": "text/csv",
    "application/vnd.google-apps.presentation": "text/plain",
}


# ── Parameters ──────────────────────────────────────────────────────


class ListFilesParams(ToolParams):
    page_size: int = Field(10, ge=1, le=100, description="Maximum number of files to return (default 10)")


class ReadFileParams(ToolParams):
    file_id: str = Field(..., min_length=1, description="Drive file id, as returned by gdrive_list_files")


class SheetRangeParams(ToolParams):
    spreadsheet_id: str = Field(
        ..., min_length=1, description="Spreadsheet id, as returned by gdrive_list_files",
    )
    cell_range: str = Field(..., alias="range", min_length=1, description="A1 range, e.g. 'Sheet1!A1:C10'")


class SheetWriteParams(SheetRangeParams):
    values: list[list[Any]] = Field(..., description="Rows to write; each row is a list of cell values")


# ── Error translation ───────────────────────────────────────────────


def _sheet_error(exc: GoogleAPIError, spreadsheet_id: str) -> Exception:
    if exc.status_code == 404:
        return SheetNotFoundError(
            f"Spreadsheet '{spreadsheet_id}' was not found. The id is probably wrong: "
            "list the Drive files again to get the correct id."
        )
    if exc.status_code == 403:
        return SheetAccessDeniedError(
            f"Access denied to spreadsheet '{spreadsheet_id}'. Ask the user to share it "
            "with the connected Google account."
        )
    return exc


# ── Executors ───────────────────────────────────────────────────────


async def list_files(client: GoogleWorkspaceClient, params: ListFilesParams) -> dict[str, Any]:
    files = await client.list_files(page_size=params.page_size)
    return {
        "files": [
            {
                "id": f.get("id"),
                "name": f.get("name"),
                "mimeType": f.get("mimeType"),
                "createdTime": f.get("createdTime"),
                "modifiedTime": f.get("modifiedTime"),
            }
            for f in files
        ],
        "total": len(files),
    }


async def read_file(client: GoogleWorkspaceClient, params: ReadFileParams) -> dict[str, Any]:
    meta = await client.get_file_metadata(params.file_id)
    mime_type = meta.get("mimeType", "")

    if mime_type in EXPORT_MIME_TYPES:
        content = await client.export_file(params.file_id, EXPORT_MIME_TYPES[mime_type])
    elif mime_type.startswith(GOOGLE_APPS_PREFIX):
        raise UnsupportedFileTypeError(f"Files of type {mime_type} cannot be read as text.")
    else:
        raw = await client.download_file(params.file_id)
        content = raw.decode("utf-8", errors="replace")

    size = int(meta["size"]) if meta.get("size") else len(content)
    result = {
        "fileId": params.file_id,
        "fileName": meta.get("name"),
        "mimeType": mime_type,
        "size": size,
        "content": content[:MAX_FILE_CONTENT_CHARS],
    }
    if len(content) > MAX_FILE_CONTENT_CHARS:
        logger.info("Truncated file %s from %d to %d chars", params.file_id, len(content), MAX_FILE_CONTENT_CHARS)
        result["truncated"] = True
    return result


async def read_values(client: GoogleWorkspaceClient, params: SheetRangeParams) -> dict[str, Any]:
    try:
        data = await client.get_values(params.spreadsheet_id, params.cell_range)
    except GoogleAPIError as exc:
        raise _sheet_error(exc, params.spreadsheet_id) from exc
    return {"values": data.get("values", []), "range": data.get("range", params.cell_range)}


async def write_values(client: GoogleWorkspaceClient, params: SheetWriteParams) -> dict[str, Any]:
    try:
        data = await client.update_values(params.spreadsheet_id, params.cell_range, params.values)
    except GoogleAPIError as exc:
        raise _sheet_error(exc, params.spreadsheet_id) from exc
    return {
        "updatedRange": data.get("updatedRange", params.cell_range),
        "updatedRows": data.get("updatedRows", len(params.values)),
        "updatedColumns": data.get("updatedColumns"),
        "updatedCells": data.get("updatedCells"),
    }


# ── Catalog entries ─────────────────────────────────────────────────

GOOGLE_TOOLS: list[ToolSpec] = [
    ToolSpec(
        name="gdrive_list_files",
        description="List the user's most recently modified Google Drive files with their ids.",
        params=ListFilesParams,
        family=GOOGLE,
        display_name=lambda args: "List Google Drive files",
        describe=lambda args: f"Listing up to {args.get('pageSize', 10)} recent Drive files",
        run=list_files,
    ),
    ToolSpec(
        name="gdrive_read_file",
        description="Read the text content of a Google Drive file by id.",
        params=ReadFileParams,
        family=GOOGLE,
        display_name=lambda args: "Read Google Drive file",
        describe=lambda args: f"Reading file {args.get('fileId', '?')}",
        run=read_file,
    ),
    ToolSpec(
        name="sheets_read_values",
        description="Read cell values from a range of a Google Sheets spreadsheet.",
        params=SheetRangeParams,
        family=GOOGLE,
        display_name=lambda args: "Read spreadsheet",
        describe=lambda args: (
            f"Reading {args.get('range', '?')} from spreadsheet {args.get('spreadsheetId', '?')}"
        ),
        run=read_values,
    ),
    ToolSpec(
        name="sheets_write_values",
        description="Overwrite a range of a Google Sheets spreadsheet with new values.",
        params=SheetWriteParams,
        family=GOOGLE,
        display_name=lambda args: "Write to spreadsheet",
        describe=lambda args: (
            f"Writing {len(args.get('values') or [])} rows to {args.get('range', '?')} "
            f"in spreadsheet {args.get('spreadsheetId', '?')}"
        ),
        run=write_values,
    ),
]
