"""Google Drive MCP Server - Main server implementation."""

import asyncio
import base64
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.lowlevel.helper_types import ReadResourceContents
from pydantic import AnyUrl, BaseModel, Field

from gdrive_mcp.binding import ApiClientBinding
from gdrive_mcp.credentials import CredentialStore
from gdrive_mcp.lifecycle import CredentialManager
from gdrive_mcp.oauth import SCOPES, GoogleOAuthClient
from gdrive_mcp.scheduler import RefreshScheduler

logger = logging.getLogger(__name__)

DRIVE_URI_PREFIX = "gdrive:///"
GOOGLE_APPS_PREFIX = "application/vnd.google-apps"
EXPORT_MIME_TYPES: Dict[str, str] = {
    "application/vnd.google-apps.document": "text/markdown",
    "application/vnd.google-apps.spreadsheet": "text/csv",
    "application/vnd.google-apps.presentation": "text/plain",
    "application/vnd.google-apps.drawing": "image/png",
}
SEARCH_FIELDS = "files(id, name, mimeType, modifiedTime, size)"
LIST_FIELDS = "nextPageToken, files(id, name, mimeType)"


@dataclass
class DriveState:
    """Credential state for one server process, owned by :class:`DriveRuntime`."""

    manager: CredentialManager
    binding: ApiClientBinding
    scheduler: RefreshScheduler


class DriveFile(BaseModel):
    """File metadata returned by search and listing."""

    id: str
    name: Optional[str] = None
    mime_type: Optional[str] = None
    modified_time: Optional[str] = None
    size: Optional[str] = None


class SearchResult(BaseModel):
    """Drive search result."""

    success: bool
    query: str
    files: List[DriveFile] = Field(default_factory=list)
    summary: Optional[str] = None
    error: Optional[str] = None


class FileListResult(BaseModel):
    """One page of the Drive file listing."""

    success: bool
    files: List[DriveFile] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    error: Optional[str] = None


class FileContentResult(BaseModel):
    """File contents result."""

    success: bool
    file_id: str
    name: Optional[str] = None
    mime_type: Optional[str] = None
    encoding: Optional[str] = None  # "utf-8" or "base64"
    content: Optional[str] = None
    error: Optional[str] = None


class UpdateCellResult(BaseModel):
    """Spreadsheet cell update result."""

    success: bool
    spreadsheet_id: str
    range: str
    value: str
    updated_cells: Optional[int] = None
    error: Optional[str] = None


class Config:
    """Server configuration."""

    def __init__(
        self,
        credentials_path: Optional[str] = None,
        keyfile_path: Optional[str] = None,
        scopes: Optional[List[str]] = None,
        refresh_interval_seconds: int = 45 * 60,
        refresh_threshold_seconds: int = 5 * 60,
        authorize_timeout_seconds: Optional[float] = 300.0,
        open_browser: bool = True,
        page_size: int = 10,
    ):
        # Both files live in the working directory unless overridden.
        self.credentials_path = Path(credentials_path or ".gdrive-server-credentials.json")
        self.keyfile_path = Path(keyfile_path or "gcp-oauth.keys.json")
        self.scopes = list(scopes or SCOPES)
        self.refresh_interval_seconds = refresh_interval_seconds
        self.refresh_threshold_seconds = refresh_threshold_seconds
        self.authorize_timeout_seconds = authorize_timeout_seconds
        self.open_browser = open_browser
        self.page_size = page_size


# Global configuration
config = Config()


def _create_drive_state() -> DriveState:
    """Wire the credential lifecycle from config."""
    store = CredentialStore(config.credentials_path)
    oauth = GoogleOAuthClient(
        config.keyfile_path,
        scopes=config.scopes,
        timeout_seconds=config.authorize_timeout_seconds,
        open_browser=config.open_browser,
    )
    manager = CredentialManager(
        store,
        oauth,
        threshold=timedelta(seconds=config.refresh_threshold_seconds),
        authorize_timeout=config.authorize_timeout_seconds,
    )
    binding = ApiClientBinding()
    scheduler = RefreshScheduler(
        manager, binding, interval=timedelta(seconds=config.refresh_interval_seconds)
    )
    return DriveState(manager=manager, binding=binding, scheduler=scheduler)


class DriveRuntime:
    """Process-wide credential state shared by every client session.

    FastMCP enters the lifespan once per session, which with the HTTP transport
    means once per connected client. The runtime builds the manager, binding and
    scheduler on the first :meth:`start` and hands the same state to every later
    caller, so there is one credential, one consent flow and one writer of the
    credentials file per process.
    """

    def __init__(self, factory: Optional[Callable[[], DriveState]] = None):
        self._factory = factory or _create_drive_state
        self._state: Optional[DriveState] = None
        self._lock: Optional[asyncio.Lock] = None

    @property
    def state(self) -> Optional[DriveState]:
        return self._state

    async def start(self) -> DriveState:
        """Load or create the credential, bind it and start background refresh.

        Raises:
            AuthorizationError: No credential could be produced.
        """
        if self._state is not None:
            return self._state
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if self._state is None:
                state = self._factory()
                logger.info("Loading Google credentials from %s", config.credentials_path)
                # The first tick is a full interval away, so the startup record must outlive it.
                record = await state.manager.ensure_valid_credential(
                    min_remaining=state.scheduler.horizon
                )
                state.binding.bind(record)
                state.scheduler.start()
                logger.info("Starting server with authenticated client")
                self._state = state
        return self._state

    async def stop(self) -> None:
        state, self._state = self._state, None
        if state is not None:
            logger.info("Stopping credential refresh...")
            await state.scheduler.stop()
        self._lock = None


# Credential state for this process
runtime = DriveRuntime()


@asynccontextmanager
async def drive_lifespan(server: FastMCP) -> AsyncIterator[DriveState]:
    """Attach the process-wide credential state to a session."""
    yield await runtime.start()


class DriveMCP(FastMCP):
    """FastMCP server whose Drive resources carry each file's own MIME type."""

    async def read_resource(self, uri: Union[AnyUrl, str]) -> Iterable[ReadResourceContents]:
        uri_str = str(uri)
        if not uri_str.startswith(DRIVE_URI_PREFIX):
            return await super().read_resource(uri)
        state = get_drive_state(self.get_context())
        return [await _read_drive_resource(state.binding, uri_str[len(DRIVE_URI_PREFIX):])]


# Create FastMCP server with credential lifespan
mcp = DriveMCP("Google Drive MCP Server", lifespan=drive_lifespan)


def get_drive_state(ctx: Context) -> DriveState:
    """Get credential state from context."""
    return ctx.request_context.lifespan_context


def escape_query(query: str) -> str:
    """Escape a user query for use inside a single-quoted Drive ``q`` literal."""
    return query.replace("\\", "\\\\").replace("'", "\\'")


def export_mime_type(mime_type: str) -> str:
    """Export format for a Google-native document type."""
    return EXPORT_MIME_TYPES.get(mime_type, "text/plain")


def is_text_mime_type(mime_type: str) -> bool:
    return mime_type.startswith("text/") or mime_type == "application/json"


def decode_content(data: Union[bytes, str], mime_type: str) -> Tuple[str, str]:
    """Render downloaded bytes as text or base64 depending on the MIME type.

    Returns:
        ``(content, encoding)`` where encoding is ``"utf-8"`` or ``"base64"``.
    """
    if isinstance(data, str):
        if is_text_mime_type(mime_type):
            return data, "utf-8"
        data = data.encode("utf-8")
    if is_text_mime_type(mime_type):
        return data.decode("utf-8", errors="replace"), "utf-8"
    return base64.b64encode(data).decode("ascii"), "base64"


def _to_drive_file(item: Dict[str, Any]) -> DriveFile:
    return DriveFile(
        id=item.get("id", ""),
        name=item.get("name"),
        mime_type=item.get("mimeType"),
        modified_time=item.get("modifiedTime"),
        size=item.get("size"),
    )


async def _read_file(binding: ApiClientBinding, file_id: str) -> FileContentResult:
    """Fetch a file, exporting Google-native documents."""
    drive = binding.drive()
    metadata = await asyncio.to_thread(
        drive.files().get(fileId=file_id, fields="mimeType,name").execute
    )
    mime_type = metadata.get("mimeType") or "application/octet-stream"

    if mime_type.startswith(GOOGLE_APPS_PREFIX):
        mime_type = export_mime_type(mime_type)
        request = drive.files().export(fileId=file_id, mimeType=mime_type)
    else:
        request = drive.files().get_media(fileId=file_id)
    data = await asyncio.to_thread(request.execute)

    content, encoding = decode_content(data, mime_type)
    return FileContentResult(
        success=True,
        file_id=file_id,
        name=metadata.get("name"),
        mime_type=mime_type,
        encoding=encoding,
        content=content,
    )


# Drive tools
@mcp.tool()
async def gdrive_search(query: str, ctx: Context) -> SearchResult:
    """Search for files in Google Drive.

    Performs a full-text search across the files the authorized user can see and
    returns up to the configured page size of matches.

    Args:
        query: Free text to search for (quotes and backslashes are escaped)
        ctx: MCP context containing the credential state

    Returns:
        SearchResult with the matching files and a one-line-per-file summary
    """
    try:
        drive = get_drive_state(ctx).binding.drive()
        request = drive.files().list(
            q=f"fullText contains '{escape_query(query)}'",
            pageSize=config.page_size,
            fields=SEARCH_FIELDS,
        )
        response = await asyncio.to_thread(request.execute)
        files = [_to_drive_file(item) for item in response.get("files", [])]
        listing = "\n".join(f"{f.id} {f.name} ({f.mime_type})" for f in files)
        return SearchResult(
            success=True,
            query=query,
            files=files,
            summary=f"Found {len(files)} files:\n{listing}",
        )
    except Exception as e:
        return SearchResult(success=False, query=query, error=str(e))


@mcp.tool()
async def gdrive_list_files(ctx: Context, cursor: Optional[str] = None) -> FileListResult:
    """List Drive files one page at a time.

    Args:
        ctx: MCP context containing the credential state
        cursor: ``next_cursor`` from a previous call to continue the listing

    Returns:
        FileListResult with this page's files and the cursor for the next page
    """
    try:
        drive = get_drive_state(ctx).binding.drive()
        params: Dict[str, Any] = {"pageSize": config.page_size, "fields": LIST_FIELDS}
        if cursor:
            params["pageToken"] = cursor
        response = await asyncio.to_thread(drive.files().list(**params).execute)
        return FileListResult(
            success=True,
            files=[_to_drive_file(item) for item in response.get("files", [])],
            next_cursor=response.get("nextPageToken"),
        )
    except Exception as e:
        return FileListResult(success=False, error=str(e))


@mcp.tool()
async def gdrive_read_file(file_id: str, ctx: Context) -> FileContentResult:
    """Read the contents of a file from Google Drive.

    Google Docs are exported as Markdown, Sheets as CSV, Slides as plain text and
    Drawings as PNG. Text and JSON files are returned as UTF-8; any other
    content is base64 encoded.

    Args:
        file_id: ID of the file to read
        ctx: MCP context containing the credential state

    Returns:
        FileContentResult with the content, its MIME type and encoding
    """
    try:
        return await _read_file(get_drive_state(ctx).binding, file_id)
    except Exception as e:
        return FileContentResult(success=False, file_id=file_id, error=str(e))


@mcp.tool()
async def gsheets_update_cell(
    file_id: str, range: str, value: str, ctx: Context
) -> UpdateCellResult:
    """Update a cell value in a Google Spreadsheet.

    Args:
        file_id: ID of the spreadsheet
        range: Cell range in A1 notation (e.g. "Sheet1!A1")
        value: New cell value, written as-is without formula parsing
        ctx: MCP context containing the credential state

    Returns:
        UpdateCellResult with the number of updated cells and any errors
    """
    try:
        sheets = get_drive_state(ctx).binding.sheets()
        request = sheets.spreadsheets().values().update(
            spreadsheetId=file_id,
            range=range,
            valueInputOption="RAW",
            body={"values": [[value]]},
        )
        response = await asyncio.to_thread(request.execute)
        return UpdateCellResult(
            success=True,
            spreadsheet_id=file_id,
            range=range,
            value=value,
            updated_cells=response.get("updatedCells"),
        )
    except Exception as e:
        return UpdateCellResult(
            success=False, spreadsheet_id=file_id, range=range, value=value, error=str(e)
        )


# Drive resources
async def _read_drive_resource(binding: ApiClientBinding, file_id: str) -> ReadResourceContents:
    """Drive file contents labelled with the MIME type they were fetched as."""
    result = await _read_file(binding, file_id)
    if result.encoding == "base64":
        content: Union[str, bytes] = base64.b64decode(result.content or "")
    else:
        content = result.content or ""
    return ReadResourceContents(content=content, mime_type=result.mime_type)


# Listed as a template; reads are served by DriveMCP.read_resource.
@mcp.resource("gdrive:///{file_id}")
async def drive_file_resource(file_id: str) -> Union[str, bytes]:
    """Contents of a Drive file, exported when it is a Google-native document."""
    state = get_drive_state(mcp.get_context())
    return (await _read_drive_resource(state.binding, file_id)).content


async def serve(transport: str, port: int = 8000) -> None:
    """Authenticate once for the process, then serve sessions until shutdown."""
    await runtime.start()
    try:
        if transport == "stdio":
            await mcp.run_stdio_async()
        else:
            # HTTP transport using StreamableHTTP
            import uvicorn

            app = mcp.streamable_http_app()
            await uvicorn.Server(uvicorn.Config(app, host="0.0.0.0", port=port)).serve()
    finally:
        await runtime.stop()


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Google Drive MCP Server")
    parser.add_argument("transport", choices=["stdio", "http"], help="Transport type")
    parser.add_argument(
        "--port", type=int, default=8000, help="Port for HTTP transport"
    )
    parser.add_argument(
        "--credentials-path",
        default=str(config.credentials_path),
        help="Where the OAuth token is saved between runs",
    )
    parser.add_argument(
        "--keyfile-path",
        default=str(config.keyfile_path),
        help="OAuth client secrets JSON downloaded from the Google Cloud Console",
    )
    parser.add_argument(
        "--refresh-interval",
        type=int,
        default=config.refresh_interval_seconds,
        help="Seconds between background credential refreshes",
    )
    parser.add_argument(
        "--refresh-threshold",
        type=int,
        default=config.refresh_threshold_seconds,
        help="Refresh when the access token has fewer seconds than this left",
    )
    parser.add_argument(
        "--authorize-timeout",
        type=float,
        default=config.authorize_timeout_seconds,
        help="Seconds to wait for interactive consent (<=0 waits forever)",
    )
    parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Print the consent URL instead of opening a browser",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (logs go to stderr)",
    )

    args = parser.parse_args()

    # Update global configuration
    config.credentials_path = Path(args.credentials_path).expanduser()
    config.keyfile_path = Path(args.keyfile_path).expanduser()
    config.refresh_interval_seconds = args.refresh_interval
    config.refresh_threshold_seconds = args.refresh_threshold
    config.authorize_timeout_seconds = (
        args.authorize_timeout if args.authorize_timeout > 0 else None
    )
    config.open_browser = not args.no_browser

    # Setup logging before emitting any log lines
    logging.basicConfig(level=getattr(logging, args.log_level))

    try:
        # Fails fast on an interval that could let the token lapse between ticks.
        _create_drive_state()
    except ValueError as exc:
        logger.error("Invalid refresh configuration: %s", exc)
        sys.exit(2)

    logger.info("Credentials file: %s", str(config.credentials_path))

    try:
        asyncio.run(serve(args.transport, args.port))
    except Exception as exc:
        logger.critical("Server terminated: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
