"""Notes bridge: lets a chat agent save structured notes to Notion and Confluence.

Provides the same operations over two surfaces:
- HTTP (for GPT actions): POST /api/save, /api/confluence, /api/confluence/auto
- MCP tools: notes_save, wiki_save, wiki_update

Credentials and default targets come from environment variables, read on
every request (see Settings).
"""

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import httpx
from mcp.server.fastmcp import FastMCP
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from note_blocks import convert, rich_text, to_notion_blocks
from schema_mapper import (
    FieldBindings,
    FieldType,
    SchemaField,
    build_properties,
    fields_from_notion,
    resolve,
)

logger = logging.getLogger("notes-bridge")

_async_client: Optional[httpx.AsyncClient] = None


async def _get_async_client(timeout: float) -> httpx.AsyncClient:
    """Get or create the shared async HTTP client."""
    global _async_client
    if _async_client is None or _async_client.is_closed:
        _async_client = httpx.AsyncClient(timeout=timeout)
    return _async_client


# =============================================================================
# Errors
# =============================================================================


class BridgeError(Exception):
    """Request-level failure reported to the caller as {error, detail}."""

    status_code = 500
    code = "INTERNAL"

    def __init__(self, message: str, detail: Any = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        """Convert to error response body."""
        result: dict = {"error": self.message}
        if self.detail is not None:
            result["detail"] = self.detail
        return result


class ConfigurationMissing(BridgeError):
    """A required credential or default target is not configured."""
    status_code = 500
    code = "CONFIG_MISSING"


class ValidationFailed(BridgeError):
    """The request body is missing a field or has one of the wrong type."""
    status_code = 400
    code = "VALIDATION_FAILED"


class SchemaIncompatible(BridgeError):
    """The target database cannot hold notes (no title column)."""
    status_code = 400
    code = "SCHEMA_INCOMPATIBLE"


class UpstreamFailure(BridgeError):
    """Notion or Confluence answered with a non-success status."""
    status_code = 500
    code = "UPSTREAM_FAILURE"

    @classmethod
    def from_http_error(cls, summary: str, e: httpx.HTTPStatusError) -> "UpstreamFailure":
        """Keep the upstream status and body as diagnostic detail."""
        if e.response is None:
            return cls(summary, detail=str(e))
        return cls(summary, detail=_response_detail(e.response), status_code=e.response.status_code)


def _response_detail(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:1000]


def _http_error_detail(e: httpx.HTTPStatusError, max_len: int = 300) -> str:
    """Extract error detail from an HTTP status error."""
    if e.response is not None:
        return e.response.text[:max_len]
    return str(e)


def _error(code: str, message: str, hint: str | None = None, ref: str | None = None) -> str:
    """Format a tool error with an optional hint."""
    parts = [f"error: {code} - {message}"]
    if ref:
        parts.append(f"ref: {ref}")
    if hint:
        parts.append(f"hint: {hint}")
    return "\n".join(parts)


HINTS = {
    "CONFIG_MISSING": "Set the missing environment variable for the bridge and restart it.",
    "VALIDATION_FAILED": "Check the request fields; mode must be db, page or both.",
    "SCHEMA_INCOMPATIBLE": "Give the database a title column (e.g. 'Name') and share it with the integration.",
    "UPSTREAM_FAILURE": "Check that the page/database is shared with the integration and the token is valid.",
    "HTTP_ERROR": "The service rejected the request; see the detail above.",
}


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_TIMEOUT = 30.0


@dataclass
class Settings:
    """Credentials and default targets, read from the environment."""
    notion_token: Optional[str] = None
    notion_database_id: Optional[str] = None
    notion_parent_page_id: Optional[str] = None
    wiki_email: Optional[str] = None
    wiki_api_token: Optional[str] = None
    wiki_domain: Optional[str] = None
    wiki_space_key: Optional[str] = None
    wiki_parent_page_id: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "Settings":
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = (env.get(name) or "").strip()
            return value or None

        timeout = DEFAULT_TIMEOUT
        raw_timeout = get("NOTES_BRIDGE_TIMEOUT")
        if raw_timeout:
            try:
                timeout = float(raw_timeout)
            except ValueError:
                logger.warning(f"Ignoring invalid NOTES_BRIDGE_TIMEOUT: {raw_timeout}")

        return cls(
            notion_token=get("NOTION_TOKEN") or get("NOTION_API_KEY"),
            notion_database_id=get("NOTION_DATABASE_ID"),
            notion_parent_page_id=get("NOTION_PARENT_PAGE_ID"),
            wiki_email=get("CONFLUENCE_EMAIL"),
            wiki_api_token=get("CONFLUENCE_API_TOKEN"),
            wiki_domain=get("CONFLUENCE_DOMAIN"),
            wiki_space_key=get("CONFLUENCE_SPACE_KEY"),
            wiki_parent_page_id=get("CONFLUENCE_PARENT_PAGE_ID"),
            timeout=timeout,
        )

    def require_notion(self) -> str:
        """Return the Notion token or raise ConfigurationMissing."""
        if not self.notion_token:
            raise ConfigurationMissing("Missing NOTION_TOKEN env")
        return self.notion_token

    def require_wiki(self, space: bool = False) -> None:
        """Check Confluence credentials (and the space key when creating pages)."""
        if not (self.wiki_email and self.wiki_api_token and self.wiki_domain):
            raise ConfigurationMissing("Missing Confluence env vars")
        if space and not self.wiki_space_key:
            raise ConfigurationMissing("Missing CONFLUENCE_SPACE_KEY (spaceKey required)")

    @property
    def wiki_base(self) -> str:
        return normalize_wiki_base(self.wiki_domain or "")


def load_settings() -> Settings:
    """Read settings from the current process environment."""
    return Settings.from_env()


# =============================================================================
# ID Helpers
# =============================================================================

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}$',
    re.IGNORECASE
)
NOTION_URL_PATTERN = re.compile(
    r'https?://(?:www\.)?notion\.(?:so|site)/(?:[^/]+/)?([^?#]+)',
    re.IGNORECASE
)
# Trailing id of a URL path, not preceded by another hex digit
URL_ID_PATTERN = re.compile(
    r'(?<![0-9a-f])([0-9a-f]{32}|[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})$',
    re.IGNORECASE
)


def normalize_uuid(uuid_str: str) -> str:
    """Normalize a UUID to standard format with dashes.

    Raises:
        ValueError: If input is not a valid UUID (wrong length or invalid chars).
    """
    clean = uuid_str.replace('-', '').lower()
    if len(clean) != 32:
        raise ValueError(f"Invalid UUID length: {uuid_str}")
    if not all(c in '0123456789abcdef' for c in clean):
        raise ValueError(f"Invalid UUID characters: {uuid_str}")
    return f"{clean[:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:]}"


def extract_uuid_from_url(url: str) -> Optional[str]:
    """Extract a Notion UUID from a page or database URL."""
    match = NOTION_URL_PATTERN.match(url)
    if not match:
        return None
    uuid_match = URL_ID_PATTERN.search(match.group(1))
    if uuid_match:
        return normalize_uuid(uuid_match.group(1))
    return None


def to_uuid(ref: Optional[str]) -> str:
    """Best-effort Notion id from a bare id or URL; unknown shapes pass through."""
    ref = (ref or "").strip()
    if UUID_PATTERN.match(ref):
        return normalize_uuid(ref)
    if ref.startswith("http"):
        return extract_uuid_from_url(ref) or ref
    return ref


# =============================================================================
# Titles
# =============================================================================

TITLE_MAX_LEN = 80
_TITLE_MARKER_PATTERN = re.compile(r'^#+\s*|^[-*]\s*')
_HEADING_MARKER_PATTERN = re.compile(r'^#+\s*')


def derive_title(title: Optional[str], content: Optional[str], now: Optional[datetime] = None) -> str:
    """Pick the note title.

    Uses the given title when non-blank, else the first non-blank content line
    without its heading/bullet marker (max 80 chars), else a timestamp title.
    """
    t = str(title or "").strip()
    if t:
        return t

    for line in str(content or "").split("\n"):
        line = line.strip()
        if line:
            return _TITLE_MARKER_PATTERN.sub("", line, count=1)[:TITLE_MAX_LEN]

    now = now or datetime.now()
    return f"Auto Note {now:%Y-%m-%d %H:%M}"


def strip_duplicate_title(title: str, content: Optional[str]) -> str:
    """Drop the first content line when it only repeats the title."""
    content = str(content or "")
    lines = content.split("\n")
    for index, line in enumerate(lines):
        if not line.strip():
            continue
        if _HEADING_MARKER_PATTERN.sub("", line.strip(), count=1) == title.strip():
            return "\n".join(lines[index + 1:]).lstrip("\n")
        break
    return content


# =============================================================================
# Request Model
# =============================================================================

MODES = ("db", "page", "both")


def _optional_str(body: dict, key: str) -> Optional[str]:
    value = body.get(key)
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        raise ValidationFailed(f"Invalid '{key}': expected a string")
    value = str(value).strip()
    return value or None


@dataclass
class NoteRequest:
    """A validated save request; children are saved after their parent."""
    mode: str = "db"
    title: str = ""
    content: str = ""
    url: Optional[str] = None
    date: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    status: Optional[str] = None
    record_id: Optional[str] = None
    page_id: Optional[str] = None
    parent_id: Optional[str] = None
    database_id: Optional[str] = None
    children: list["NoteRequest"] = field(default_factory=list)

    @classmethod
    def from_body(cls, body: Any, default_mode: str = "db") -> "NoteRequest":
        """Validate a JSON request body.

        Raises:
            ValidationFailed: On an unknown mode or a field of the wrong type.
        """
        if not isinstance(body, dict):
            raise ValidationFailed("Request body must be a JSON object")

        mode = body.get("mode") or default_mode
        if mode not in MODES:
            raise ValidationFailed("Invalid mode. Use 'db', 'page' or 'both'")

        tags = body.get("tags") or []
        if isinstance(tags, str):
            tags = [t.strip() for t in tags.split(",") if t.strip()]
        elif not isinstance(tags, list):
            raise ValidationFailed("Invalid 'tags': expected a list of strings")

        children = body.get("children") or []
        if not isinstance(children, list) or not all(isinstance(c, dict) for c in children):
            raise ValidationFailed("Invalid 'children': expected a list of objects")

        content = body.get("content")
        if isinstance(content, (dict, list)):
            raise ValidationFailed("Invalid 'content': expected a string")

        return cls(
            mode=mode,
            title=_optional_str(body, "title") or "",
            content="" if content is None else str(content),
            url=_optional_str(body, "url"),
            date=_optional_str(body, "date"),
            tags=[str(t) for t in tags],
            status=_optional_str(body, "status"),
            record_id=_optional_str(body, "recordId"),
            page_id=_optional_str(body, "pageId"),
            parent_id=_optional_str(body, "parentId"),
            database_id=_optional_str(body, "databaseId"),
            children=[cls.from_body(c, default_mode=mode) for c in children],
        )


# =============================================================================
# Notion API
# =============================================================================

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2025-09-03"

# Notion accepts at most 100 children per append and returns at most 100 per list
APPEND_BATCH_SIZE = 100
LIST_PAGE_SIZE = 100


async def _notion_request_async(
    method: str,
    endpoint: str,
    json_body: Optional[dict] = None
) -> dict:
    """Make an authenticated request to the Notion API.

    Raises:
        httpx.HTTPStatusError: On any non-success response (no retry).
    """
    settings = load_settings()
    token = settings.require_notion()
    client = await _get_async_client(settings.timeout)

    headers = {
        "Authorization": f"Bearer {token}",
        "Notion-Version": NOTION_VERSION,
        "Content-Type": "application/json",
    }

    url = f"{NOTION_API_BASE}{endpoint}"

    if method == "GET":
        response = await client.get(url, headers=headers)
    elif method == "POST":
        response = await client.post(url, headers=headers, json=json_body or {})
    elif method == "PATCH":
        response = await client.patch(url, headers=headers, json=json_body or {})
    elif method == "DELETE":
        response = await client.delete(url, headers=headers)
    else:
        raise ValueError(f"Unsupported method: {method}")

    response.raise_for_status()
    return response.json()


def chunked(items: list, size: int = APPEND_BATCH_SIZE) -> list[list]:
    """Split items into consecutive batches of at most size."""
    return [items[i:i + size] for i in range(0, len(items), size)]


async def fetch_database_schema(database_id: str) -> tuple[str, list[SchemaField]]:
    """Fetch a database's schema via its first data source.

    In Notion API 2025-09-03 the schema lives on the data source, not the
    database container.

    Returns:
        Tuple of (data_source_id, schema fields in declaration order).

    Raises:
        SchemaIncompatible: If the database exposes no data source.
    """
    database = await _notion_request_async("GET", f"/databases/{database_id}")
    data_sources = database.get("data_sources", [])
    if not data_sources or not data_sources[0].get("id"):
        raise SchemaIncompatible("Database has no data sources", detail={"databaseId": database_id})
    data_source_id = data_sources[0]["id"]
    data_source = await _notion_request_async("GET", f"/data_sources/{data_source_id}")
    return data_source_id, fields_from_notion(data_source.get("properties", {}))


_FILTER_KEYS = {
    FieldType.TEXT: "rich_text",
    FieldType.URL: "url",
    FieldType.TITLE: "title",
}


async def find_record(
    data_source_id: str,
    field: SchemaField,
    value: str
) -> Optional[dict]:
    """Find the first row whose identifier column equals value."""
    filter_key = _FILTER_KEYS.get(field.type, "rich_text")
    result = await _notion_request_async(
        "POST",
        f"/data_sources/{data_source_id}/query",
        json_body={
            "filter": {"property": field.name, filter_key: {"equals": value}},
            "page_size": 1,
        }
    )
    results = result.get("results", [])
    return results[0] if results else None


async def create_page(parent: dict, properties: dict) -> dict:
    """Create a page (database row or child page)."""
    return await _notion_request_async(
        "POST",
        "/pages",
        json_body={"parent": parent, "properties": properties}
    )


async def update_page_properties(page_id: str, properties: dict) -> dict:
    """Patch page properties and return the updated page."""
    return await _notion_request_async(
        "PATCH",
        f"/pages/{page_id}",
        json_body={"properties": properties}
    )


async def list_child_block_ids(block_id: str) -> list[str]:
    """List the ids of all direct children of a block, following pagination."""
    ids = []
    start_cursor = None

    while True:
        endpoint = f"/blocks/{block_id}/children?page_size={LIST_PAGE_SIZE}"
        if start_cursor:
            endpoint += f"&start_cursor={start_cursor}"

        result = await _notion_request_async("GET", endpoint)
        ids.extend(block["id"] for block in result.get("results", []))

        if not result.get("has_more"):
            break
        start_cursor = result.get("next_cursor")

    return ids


async def append_blocks(block_id: str, blocks: list[dict]) -> None:
    """Append blocks in batches the append endpoint accepts."""
    for batch in chunked(blocks, APPEND_BATCH_SIZE):
        await _notion_request_async(
            "PATCH",
            f"/blocks/{block_id}/children",
            json_body={"children": batch}
        )


async def replace_page_body(page_id: str, blocks: list[dict]) -> None:
    """Replace a page body: delete every existing child, then append blocks."""
    existing = await list_child_block_ids(page_id)
    for child_id in existing:
        await _notion_request_async("DELETE", f"/blocks/{child_id}")
    logger.info(f"Cleared {len(existing)} blocks from {page_id}")
    await append_blocks(page_id, blocks)


# =============================================================================
# Upsert
# =============================================================================


def _page_title_property(title: str) -> dict:
    return {"title": {"title": rich_text(title)}}


def _database_id(note: NoteRequest, settings: Settings) -> str:
    database_id = to_uuid(note.database_id or settings.notion_database_id)
    if not database_id:
        raise ConfigurationMissing("Missing NOTION_DATABASE_ID env")
    return database_id


def _parent_page_id(note: NoteRequest, settings: Settings) -> str:
    parent_id = to_uuid(note.parent_id or settings.notion_parent_page_id)
    if not parent_id:
        raise ConfigurationMissing("Missing NOTION_PARENT_PAGE_ID env (or 'parentId' in the request)")
    return parent_id


def _check_request(note: NoteRequest, settings: Settings, nested: bool = False) -> None:
    """Raise on missing database or parent configuration anywhere in the tree.

    Nested notes get their parent document as parentId, so only top-level
    notes need a configured parent page.
    """
    document_id = note.page_id or note.record_id
    if note.mode in ("db", "both"):
        _database_id(note, settings)
    if note.mode in ("page", "both") and not document_id and not nested:
        _parent_page_id(note, settings)
    for child in note.children:
        _check_request(child, settings, nested=True)


async def _upsert_record(
    note: NoteRequest,
    settings: Settings,
    title: str,
    content: str,
    *,
    key: Optional[str],
    body_blocks: Optional[list[dict]],
    document_url: Optional[str] = None,
    parent_ref: Optional[str] = None,
) -> dict:
    """Create or update one database row.

    The row is looked up by the recordId column when a key is given. On a
    fresh create without a key, the row's own id and URL are written back
    into the recordId/recordUrl columns.
    """
    database_id = _database_id(note, settings)

    data_source_id, fields = await fetch_database_schema(database_id)
    bindings = resolve(fields)
    if bindings.title is None:
        raise SchemaIncompatible(
            "No title property in DB",
            detail={"databaseId": database_id, "fields": [f.name for f in fields]}
        )

    properties = build_properties(bindings, fields, {
        "title": title,
        "url": note.url,
        "date": note.date,
        "tags": note.tags,
        "status": note.status,
        "content": content,
        "recordId": key,
        "recordUrl": document_url,
        "parentRef": parent_ref,
    })

    existing = None
    if key and bindings.record_id:
        id_field = next(f for f in fields if f.name == bindings.record_id)
        existing = await find_record(data_source_id, id_field, key)
    elif key:
        logger.warning(f"Database {database_id} has no record id column; creating a new row for {key}")

    if existing is not None:
        page = await update_page_properties(existing["id"], properties)
        if body_blocks is not None:
            await replace_page_body(existing["id"], body_blocks)
        logger.info(f"Updated row {existing['id']} in {database_id}")
        return {"pageId": existing["id"], "url": page.get("url") or existing.get("url"), "created": False}

    page = await create_page({"database_id": database_id}, properties)
    if body_blocks:
        await append_blocks(page["id"], body_blocks)

    backfill = _identity_backfill(bindings, fields, page, key, document_url)
    if backfill:
        await update_page_properties(page["id"], backfill)

    logger.info(f"Created row {page['id']} in {database_id}")
    return {"pageId": page["id"], "url": page.get("url"), "created": True}


def _identity_backfill(
    bindings: FieldBindings,
    fields: list[SchemaField],
    page: dict,
    key: Optional[str],
    document_url: Optional[str],
) -> dict:
    return build_properties(bindings, fields, {
        "recordId": None if key else page["id"],
        "recordUrl": None if document_url else page.get("url"),
    })


async def _upsert_document(
    note: NoteRequest,
    settings: Settings,
    title: str,
    body_blocks: Optional[list[dict]],
    *,
    page_id: Optional[str],
) -> dict:
    """Replace an existing page's body, or create a child page."""
    if page_id:
        page_id = to_uuid(page_id)
        if note.title:
            page = await update_page_properties(page_id, _page_title_property(title))
        else:
            page = await _notion_request_async("GET", f"/pages/{page_id}")
        if body_blocks is not None:
            await replace_page_body(page_id, body_blocks)
        logger.info(f"Updated page {page_id}")
        return {"pageId": page_id, "url": page.get("url"), "created": False}

    parent_id = _parent_page_id(note, settings)

    page = await create_page({"page_id": parent_id}, _page_title_property(title))
    if body_blocks:
        await append_blocks(page["id"], body_blocks)
    logger.info(f"Created page {page['id']} under {parent_id}")
    return {"pageId": page["id"], "url": page.get("url"), "created": True}


async def _save_note(note: NoteRequest, settings: Settings, parent_ref: Optional[str] = None) -> dict:
    title = derive_title(note.title, note.content)
    content = strip_duplicate_title(title, note.content)
    body_blocks = to_notion_blocks(convert(content)) if content.strip() else None

    result: dict = {"ok": True, "mode": note.mode, "title": title}

    if note.mode == "db":
        record = await _upsert_record(
            note, settings, title, content,
            key=note.record_id, body_blocks=body_blocks, parent_ref=parent_ref
        )
        result.update(record)

    elif note.mode == "page":
        page_id = note.page_id or note.record_id
        if page_id and body_blocks is None and not note.title:
            raise ValidationFailed("Missing 'content' for page mode")
        result.update(await _upsert_document(note, settings, title, body_blocks, page_id=page_id))

    else:
        document = await _upsert_document(
            note, settings, title, body_blocks, page_id=note.record_id or note.page_id
        )
        record = await _upsert_record(
            note, settings, title, content,
            key=document["pageId"], body_blocks=None,
            document_url=document["url"], parent_ref=parent_ref
        )
        result.update(document)
        result["recordPageId"] = record["pageId"]

    children = []
    for child in note.children:
        if not child.parent_id:
            child.parent_id = result["pageId"]
        children.append(await _save_note(child, settings, parent_ref=result["pageId"]))
    result["children"] = children

    return result


async def save_note(body: Any, settings: Optional[Settings] = None) -> dict:
    """Save a note (and its children) to Notion.

    Args:
        body: Request body with mode, title, content, url, date, tags,
            status, recordId, pageId, parentId, databaseId, children.
        settings: Defaults to the current environment.

    Returns:
        {"ok": True, "mode", "title", "pageId", "url", "created",
        "recordPageId" (both mode), "children": [...]}.

    Raises:
        ConfigurationMissing, ValidationFailed, SchemaIncompatible, or
        httpx.HTTPStatusError from the first failed Notion call. Steps that
        already succeeded are not rolled back.
    """
    settings = settings or load_settings()
    settings.require_notion()
    note = NoteRequest.from_body(body)
    _check_request(note, settings)
    return await _save_note(note, settings)


# =============================================================================
# Confluence API
# =============================================================================

DEFAULT_WIKI_BODY = "<p>Empty content</p>"
DEFAULT_WIKI_STATUS = "미정"
_CQL_QUOTE_PATTERN = re.compile(r'["\\]')


def normalize_wiki_base(domain: str) -> str:
    """Append /wiki to a Confluence Cloud domain unless already present."""
    if not domain:
        return ""
    base = domain.rstrip("/")
    return base if base.endswith("/wiki") else f"{base}/wiki"


async def _wiki_request_async(
    method: str,
    path: str,
    json_body: Optional[dict] = None,
    params: Optional[dict] = None
) -> dict:
    """Make an authenticated request to the Confluence REST API."""
    settings = load_settings()
    settings.require_wiki()
    client = await _get_async_client(settings.timeout)

    auth = httpx.BasicAuth(settings.wiki_email, settings.wiki_api_token)
    headers = {"Accept": "application/json"}
    url = f"{settings.wiki_base}{path}"

    if method == "GET":
        response = await client.get(url, headers=headers, auth=auth, params=params)
    elif method == "POST":
        response = await client.post(url, headers=headers, auth=auth, json=json_body or {})
    elif method == "PUT":
        response = await client.put(url, headers=headers, auth=auth, json=json_body or {})
    else:
        raise ValueError(f"Unsupported method: {method}")

    response.raise_for_status()
    return response.json()


def _wiki_page_url(settings: Settings, page: dict) -> Optional[str]:
    links = page.get("_links") or {}
    # webui links are relative to the /wiki base
    base = links.get("base") or settings.wiki_base
    webui = links.get("webui")
    if base and webui:
        return f"{base}{webui}"
    return None


async def save_wiki_page(body: Any, settings: Optional[Settings] = None) -> dict:
    """Create a Confluence page in the configured space.

    The body's title is required; content is storage-format XHTML. The
    parent page is the body's parentPageId, else CONFLUENCE_PARENT_PAGE_ID.
    Any space key in the body is ignored.
    """
    settings = settings or load_settings()
    settings.require_wiki(space=True)
    if not isinstance(body, dict):
        raise ValidationFailed("Request body must be a JSON object")

    title = str(body.get("title") or "").strip()
    if not title:
        raise ValidationFailed("Missing 'title'")

    parent_page_id = str(body.get("parentPageId") or settings.wiki_parent_page_id or "").strip()

    payload: dict = {
        "type": "page",
        "title": title,
        "space": {"key": settings.wiki_space_key},
        "body": {
            "storage": {
                "value": body.get("content") or DEFAULT_WIKI_BODY,
                "representation": "storage",
            }
        },
    }
    if parent_page_id:
        payload["ancestors"] = [{"id": parent_page_id}]

    page = await _wiki_request_async("POST", "/rest/api/content", json_body=payload)
    logger.info(f"Created Confluence page {page.get('id')} in {settings.wiki_space_key}")
    return {"ok": True, "result": page, "url": _wiki_page_url(settings, page)}


def _escape_cql(value: str) -> str:
    return _CQL_QUOTE_PATTERN.sub(lambda m: "\\" + m.group(0), value)


async def search_wiki(
    query: str,
    space_key: str = "",
    limit: int = 5,
    status_filter: str = "",
    tag_filter: Optional[list[str]] = None
) -> list[dict]:
    """Find pages whose title contains query.

    Labels with the `status` prefix give the page status; the remaining
    labels are its tags.
    """
    settings = load_settings()
    cql = f'title ~ "{_escape_cql(query)}"'
    if space_key:
        cql += f' AND space = "{_escape_cql(space_key)}"'

    data = await _wiki_request_async(
        "GET",
        "/rest/api/content/search",
        params={"cql": cql, "limit": limit, "expand": "version,metadata.labels"}
    )

    pages = []
    for page in data.get("results", []):
        labels = ((page.get("metadata") or {}).get("labels") or {}).get("results", [])
        status = next(
            (label.get("name") for label in labels if label.get("prefix") == "status"),
            DEFAULT_WIKI_STATUS
        )
        pages.append({
            "id": page.get("id"),
            "title": page.get("title", ""),
            "url": _wiki_page_url(settings, page) or f"{settings.wiki_base}/pages/{page.get('id')}",
            "lastEdited": (page.get("version") or {}).get("when"),
            "status": status,
            "tags": [
                label["name"] for label in labels
                if label.get("name") and label.get("prefix") != "status"
                and not label["name"].startswith("status")
            ],
        })

    if status_filter:
        pages = [p for p in pages if p["status"] == status_filter]
    if tag_filter:
        pages = [p for p in pages if all(tag in p["tags"] for tag in tag_filter)]
    return pages


def find_best_matching_page(pages: list[dict], query: str) -> Optional[dict]:
    """Prefer titles containing the query, then the most recently edited."""
    if not pages:
        return None
    q = query.lower()
    ranked = sorted(
        pages,
        key=lambda p: (q in (p.get("title") or "").lower(), p.get("lastEdited") or ""),
        reverse=True
    )
    return ranked[0]


async def update_wiki_content(page_id: str, content: str) -> dict:
    """Replace a page body, bumping its version number."""
    page = await _wiki_request_async("GET", f"/rest/api/content/{page_id}", params={"expand": "version"})
    payload = {
        "version": {"number": page["version"]["number"] + 1},
        "title": page["title"],
        "type": "page",
        "body": {"storage": {"value": content, "representation": "storage"}},
    }
    return await _wiki_request_async("PUT", f"/rest/api/content/{page_id}", json_body=payload)


async def auto_update_wiki(body: Any, settings: Optional[Settings] = None) -> dict:
    """Apply modify actions to the page best matching a target title.

    Each action is {"type": "modify", "scope": "parent"|"child", "content",
    "title" (child scope)}. A child is matched by exact title among the
    target page's direct children.
    """
    settings = settings or load_settings()
    settings.require_wiki()
    if not isinstance(body, dict):
        raise ValidationFailed("Invalid request body")

    target = body.get("target")
    actions = body.get("actions")
    if not target or not isinstance(target, str) or not isinstance(actions, list):
        raise ValidationFailed("Invalid request body")

    pages = await search_wiki(target, space_key=settings.wiki_space_key or "")
    parent_page = find_best_matching_page(pages, target)
    if parent_page is None:
        raise UpstreamFailure(f"No pages found for target '{target}'", status_code=404)

    updated_pages = []
    children: Optional[list[dict]] = None

    for action in actions:
        if not isinstance(action, dict) or action.get("type") != "modify":
            logger.warning(f"Skipping unsupported action: {action!r}")
            continue

        content = str(action.get("content") or "")
        scope = action.get("scope")

        if scope == "parent":
            await update_wiki_content(parent_page["id"], content)
            updated_pages.append({
                "id": parent_page["id"],
                "title": parent_page["title"],
                "url": parent_page["url"],
                "scope": "parent",
            })

        elif scope == "child":
            if children is None:
                data = await _wiki_request_async("GET", f"/rest/api/content/{parent_page['id']}/child/page")
                children = data.get("results", [])
            matched = next((c for c in children if c.get("title") == action.get("title")), None)
            if matched is None:
                updated_pages.append({"title": action.get("title"), "scope": "child", "error": "Child page not found"})
                continue
            await update_wiki_content(matched["id"], content)
            updated_pages.append({
                "id": matched["id"],
                "title": matched["title"],
                "url": _wiki_page_url(settings, matched) or f"{settings.wiki_base}/pages/{matched['id']}",
                "scope": "child",
            })

        else:
            logger.warning(f"Skipping action with unknown scope: {scope!r}")

    return {"ok": True, "updatedPages": updated_pages}


# =============================================================================
# HTTP Endpoints
# =============================================================================

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
CORS_HEADERS = ["Content-Type", "Authorization", "Accept-Charset"]

Operation = Callable[[Any], Awaitable[dict]]


async def _read_json(request: Request) -> dict:
    """Parse the body as a JSON object; anything unparseable is {}."""
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


async def _handle_post(request: Request, operation: Operation, failure_summary: str) -> Response:
    """Run an operation for a POST, mapping failures to {error, detail}."""
    if request.method == "OPTIONS":
        return Response(status_code=200)
    if request.method != "POST":
        return JSONResponse({"error": "Only POST allowed"}, status_code=405)

    body = await _read_json(request)
    try:
        return JSONResponse(await operation(body))
    except BridgeError as e:
        error = e
    except httpx.HTTPStatusError as e:
        error = UpstreamFailure.from_http_error(failure_summary, e)
    except httpx.RequestError as e:
        error = UpstreamFailure(failure_summary, detail=str(e), status_code=502)

    logger.error(f"{failure_summary}: {error.message} (HTTP {error.status_code}) {error.detail!r}")
    return JSONResponse(error.to_dict(), status_code=error.status_code)


async def save_endpoint(request: Request) -> Response:
    """POST /api/save: save a note to Notion."""
    return await _handle_post(request, save_note, "Failed to save to Notion")


async def wiki_save_endpoint(request: Request) -> Response:
    """POST /api/confluence: create a Confluence page."""
    return await _handle_post(request, save_wiki_page, "Failed to save to Confluence")


async def wiki_auto_endpoint(request: Request) -> Response:
    """POST /api/confluence/auto: update pages matching a target title."""
    return await _handle_post(request, auto_update_wiki, "Confluence auto update failed")


async def health_endpoint(request: Request) -> JSONResponse:
    """Report which backends are configured (no network calls)."""
    settings = load_settings()
    return JSONResponse({
        "status": "ok",
        "notion": settings.notion_token is not None,
        "confluence": bool(settings.wiki_email and settings.wiki_api_token and settings.wiki_domain),
    })


ROUTES = [
    Route("/api/save", save_endpoint, methods=ALL_METHODS),
    Route("/api/confluence", wiki_save_endpoint, methods=ALL_METHODS),
    Route("/api/confluence/auto", wiki_auto_endpoint, methods=ALL_METHODS),
    Route("/health", health_endpoint, methods=["GET"]),
]

CORS_OPTIONS = {
    "allow_origins": ["*"],
    "allow_methods": ["POST", "OPTIONS"],
    "allow_headers": CORS_HEADERS,
}


def create_app() -> Starlette:
    """Build the HTTP app for GPT actions."""
    return Starlette(routes=list(ROUTES), middleware=[Middleware(CORSMiddleware, **CORS_OPTIONS)])


# =============================================================================
# MCP Tools
# =============================================================================

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 2052

mcp = FastMCP("notes-bridge", host=DEFAULT_HOST, port=DEFAULT_PORT)


async def _run_tool(operation: Operation, body: dict) -> tuple[Optional[dict], Optional[str]]:
    """Run an operation for a tool call; returns (result, error_text)."""
    try:
        return await operation(body), None
    except BridgeError as e:
        return None, _error(e.code, e.message, hint=HINTS.get(e.code))
    except httpx.HTTPStatusError as e:
        status = e.response.status_code if e.response is not None else "error"
        return None, _error("HTTP_ERROR", f"HTTP {status}: {_http_error_detail(e)}", hint=HINTS["HTTP_ERROR"])
    except httpx.RequestError as e:
        return None, _error("HTTP_ERROR", f"{type(e).__name__}: {e}")


def _render_saved(result: dict, indent: str = "") -> list[str]:
    action = "created" if result.get("created") else "updated"
    lines = [f"{indent}{action} {result['pageId']} '{result['title']}' {result.get('url') or ''}".rstrip()]
    for child in result.get("children", []):
        lines.extend(_render_saved(child, indent + "  "))
    return lines


@mcp.tool()
async def notes_save(
    content: str = "",
    title: str = "",
    mode: str = "db",
    url: str = "",
    date: str = "",
    tags: list[str] | None = None,
    status: str = "",
    record_id: str = "",
    page_id: str = "",
    parent_id: str = "",
) -> str:
    """Save a note to Notion.

    Args:
        content: Note body. Supports # headings, - bullets, 1. numbers,
            - [ ] todos, > quotes, > 📌 callouts, !! toggles, ``` code,
            | tables |, ---, [목차], /sync ... /endsync, ![alt](url),
            <url> bookmarks and bare media URLs.
        title: Optional; derived from the first content line when empty.
        mode: "db" (database row), "page" (child page), or "both".
        url, date, tags, status: Optional database column values.
        record_id: Upsert key; an existing row/page with this id is replaced.
        page_id: Existing page to overwrite (page mode).
        parent_id: Parent page for new pages.

    Returns:
        One line per saved note, or an error with a hint.
    """
    body = {
        "content": content, "title": title, "mode": mode, "url": url, "date": date,
        "tags": tags or [], "status": status, "recordId": record_id,
        "pageId": page_id, "parentId": parent_id,
    }
    result, err = await _run_tool(save_note, body)
    if err:
        return err
    return "\n".join(_render_saved(result))


@mcp.tool()
async def wiki_save(title: str, content: str = "", parent_page_id: str = "") -> str:
    """Create a Confluence page (storage-format XHTML content) in the configured space."""
    result, err = await _run_tool(
        save_wiki_page,
        {"title": title, "content": content, "parentPageId": parent_page_id}
    )
    if err:
        return err
    return f"created {result['result'].get('id')} {result.get('url') or ''}".rstrip()


@mcp.tool()
async def wiki_update(target: str, actions: list[dict]) -> str:
    """Update the Confluence page best matching target, or its child pages.

    Args:
        target: Title (or part of it) of the page to update.
        actions: [{"type": "modify", "scope": "parent"|"child",
            "title": child title, "content": storage XHTML}]
    """
    result, err = await _run_tool(auto_update_wiki, {"target": target, "actions": actions})
    if err:
        return err
    lines = []
    for page in result["updatedPages"]:
        if "error" in page:
            lines.append(f"{page['scope']} '{page['title']}': {page['error']}")
        else:
            lines.append(f"{page['scope']} {page['id']} '{page['title']}' updated")
    return "\n".join(lines) or "no actions applied"


# =============================================================================
# Main Entry Point
# =============================================================================

def main():
    """Run the notes bridge.

    Usage:
        notes-bridge                      # HTTP on 127.0.0.1:2052 (REST + MCP)
        notes-bridge --host 0.0.0.0       # expose REST endpoints to GPT actions
        notes-bridge --stdio              # MCP over stdio
    """
    import argparse

    parser = argparse.ArgumentParser(description="Notes bridge for Notion and Confluence")
    parser.add_argument("--host", default=DEFAULT_HOST, help="HTTP bind address")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="HTTP port")
    parser.add_argument(
        "--stdio",
        action="store_true",
        help="Run the MCP server over stdio instead of HTTP"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    settings = load_settings()
    if settings.notion_token is None:
        logger.warning("NOTION_TOKEN is not set; Notion saves will fail")
    if not settings.wiki_domain:
        logger.warning("CONFLUENCE_DOMAIN is not set; Confluence saves will fail")

    if args.stdio:
        mcp.run()
        return

    import uvicorn

    app = mcp.streamable_http_app()
    app.add_route("/api/save", save_endpoint, methods=ALL_METHODS)
    app.add_route("/api/confluence", wiki_save_endpoint, methods=ALL_METHODS)
    app.add_route("/api/confluence/auto", wiki_auto_endpoint, methods=ALL_METHODS)
    app.add_route("/health", health_endpoint, methods=["GET"])
    app.add_middleware(CORSMiddleware, **CORS_OPTIONS)

    logger.info(f"Starting notes bridge on http://{args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning")


if __name__ == "__main__":
    main()
