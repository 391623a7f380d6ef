"""Resolve which database columns hold a note's title, url, date, tags, ...

The target database is whatever the user points the bridge at, so column
names are not known in advance. Each semantic intent is resolved from an
explicit rule: a list of candidate names (matched case-insensitively, with
surrounding whitespace ignored) restricted to acceptable field types, then
an optional fallback to the first field of the expected type.
"""

import logging
from dataclasses import dataclass, fields as dataclass_fields
from enum import Enum
from typing import Any, Iterable, Optional

from note_blocks import RICH_TEXT_LIMIT, rich_text

logger = logging.getLogger("notes-bridge.schema")


class FieldType(Enum):
    """Closed set of field types the mapper reasons about."""
    TITLE = "title"
    TEXT = "text"
    URL = "url"
    DATE = "date"
    MULTI_SELECT = "multiSelect"
    SINGLE_SELECT = "singleSelect"
    STATUS = "status"
    NUMBER = "number"
    CHECKBOX = "checkbox"
    OTHER = "other"


@dataclass(frozen=True)
class SchemaField:
    """One column of the target database."""
    name: str
    type: FieldType


# Notion property type → FieldType
NOTION_TYPE_MAP = {
    "title": FieldType.TITLE,
    "rich_text": FieldType.TEXT,
    "url": FieldType.URL,
    "date": FieldType.DATE,
    "multi_select": FieldType.MULTI_SELECT,
    "select": FieldType.SINGLE_SELECT,
    "status": FieldType.STATUS,
    "number": FieldType.NUMBER,
    "checkbox": FieldType.CHECKBOX,
}


def fields_from_notion(properties: dict) -> list[SchemaField]:
    """Adapt a Notion data source `properties` object, keeping its order."""
    return [
        SchemaField(name, NOTION_TYPE_MAP.get((prop or {}).get("type"), FieldType.OTHER))
        for name, prop in (properties or {}).items()
    ]


@dataclass
class FieldBindings:
    """Resolved column name per intent; None when the intent is unresolved."""
    title: Optional[str] = None
    url: Optional[str] = None
    date: Optional[str] = None
    tags: Optional[str] = None
    status: Optional[str] = None
    content: Optional[str] = None
    record_id: Optional[str] = None
    record_url: Optional[str] = None
    parent_ref: Optional[str] = None

    def get(self, intent: str) -> Optional[str]:
        """Look up a binding by intent name (recordId and record_id both work)."""
        return getattr(self, INTENT_ATTRS.get(intent, intent), None)

    def as_dict(self) -> dict[str, str]:
        """Resolved bindings keyed by intent name."""
        result = {}
        for f in dataclass_fields(self):
            value = getattr(self, f.name)
            if value is not None:
                result[ATTR_INTENTS[f.name]] = value
        return result


INTENT_ATTRS = {
    "title": "title",
    "url": "url",
    "date": "date",
    "tags": "tags",
    "status": "status",
    "content": "content",
    "recordId": "record_id",
    "recordUrl": "record_url",
    "parentRef": "parent_ref",
}
ATTR_INTENTS = {attr: intent for intent, attr in INTENT_ATTRS.items()}


# =============================================================================
# Resolution Rules
# =============================================================================


@dataclass(frozen=True)
class IntentRule:
    """How one intent is resolved.

    name_types lists acceptable types for a name match, tried in order (an
    exact dedicated type before a generic one). fallback_types lists types
    whose first field is taken when no name matches; empty means no fallback.
    """
    intent: str
    candidates: tuple[str, ...]
    name_types: tuple[FieldType, ...]
    fallback_types: tuple[FieldType, ...] = ()


# Resolution order matters: content's fallback skips fields claimed earlier
RESOLUTION_RULES: tuple[IntentRule, ...] = (
    IntentRule("title", ("name", "title", "제목", "타이틀"),
               (FieldType.TITLE,), (FieldType.TITLE,)),
    IntentRule("url", ("url", "link", "주소"),
               (FieldType.URL,), (FieldType.URL,)),
    IntentRule("date", ("date", "날짜"),
               (FieldType.DATE,), (FieldType.DATE,)),
    IntentRule("tags", ("tags", "tag", "태그"),
               (FieldType.MULTI_SELECT,), (FieldType.MULTI_SELECT,)),
    IntentRule("status", ("status", "state", "상태"),
               (FieldType.STATUS, FieldType.SINGLE_SELECT),
               (FieldType.STATUS, FieldType.SINGLE_SELECT)),
    IntentRule("recordId", ("pageid", "page_id", "pid", "recordid", "record_id", "페이지id"),
               (FieldType.TEXT,)),
    IntentRule("recordUrl", ("pageurl", "page_url", "purl", "recordurl", "record_url", "페이지url"),
               (FieldType.TEXT, FieldType.URL)),
    IntentRule("parentRef", ("parent", "parentid", "parent_id", "상위"),
               (FieldType.TEXT,)),
    IntentRule("content", ("content", "body", "내용", "본문"),
               (FieldType.TEXT,)),
)

# Intents whose fields the content fallback must not reuse
_CONTENT_EXCLUDED_INTENTS = ("recordId", "recordUrl", "title", "url", "parentRef")


def _normalize(name: str) -> str:
    return str(name or "").strip().lower()


def _find_by_name(
    fields: list[SchemaField],
    candidates: Iterable[str],
    field_type: FieldType
) -> Optional[str]:
    wanted = {_normalize(c) for c in candidates}
    for f in fields:
        if f.type == field_type and _normalize(f.name) in wanted:
            return f.name
    return None


def _first_of_type(
    fields: list[SchemaField],
    field_type: FieldType,
    exclude: Iterable[str] = ()
) -> Optional[str]:
    excluded = set(exclude)
    for f in fields:
        if f.type == field_type and f.name not in excluded:
            return f.name
    return None


def _apply_rule(rule: IntentRule, fields: list[SchemaField]) -> Optional[str]:
    for field_type in rule.name_types:
        name = _find_by_name(fields, rule.candidates, field_type)
        if name is not None:
            return name
    for field_type in rule.fallback_types:
        name = _first_of_type(fields, field_type)
        if name is not None:
            return name
    return None


def resolve(fields: Iterable[SchemaField]) -> FieldBindings:
    """Resolve every intent against a database schema.

    Args:
        fields: Schema fields in declaration order.

    Returns:
        FieldBindings with unresolved intents left as None. A missing title
        is the caller's to report.
    """
    fields = list(fields)
    bindings = FieldBindings()

    for rule in RESOLUTION_RULES:
        name = _apply_rule(rule, fields)
        if name is None and rule.intent == "content":
            claimed = [bindings.get(i) for i in _CONTENT_EXCLUDED_INTENTS]
            name = _first_of_type(fields, FieldType.TEXT, exclude=[c for c in claimed if c])
        setattr(bindings, INTENT_ATTRS[rule.intent], name)

    logger.debug(f"Resolved schema bindings: {bindings.as_dict()}")
    return bindings


# =============================================================================
# Property Value Envelopes
# =============================================================================


def build_property_value(field_type: FieldType, value: Any) -> Optional[dict]:
    """Wrap a value in the Notion property envelope for its field type.

    Args:
        field_type: Type of the target field.
        value: Raw value; lists are accepted for multi-select.

    Returns:
        Notion API property value dict, or None when the value does not fit.
    """
    if field_type == FieldType.TITLE:
        return {"title": rich_text(str(value))}
    elif field_type == FieldType.TEXT:
        return {"rich_text": rich_text(str(value))}
    elif field_type == FieldType.URL:
        return {"url": str(value)}
    elif field_type == FieldType.DATE:
        return {"date": {"start": str(value)}}
    elif field_type == FieldType.MULTI_SELECT:
        # Notion creates options that do not exist yet
        if isinstance(value, str):
            names = [n.strip() for n in value.split(",")]
        else:
            names = [str(n).strip() for n in value]
        return {"multi_select": [{"name": n} for n in names if n]}
    elif field_type == FieldType.SINGLE_SELECT:
        return {"select": {"name": str(value)}}
    elif field_type == FieldType.STATUS:
        return {"status": {"name": str(value)}}
    elif field_type == FieldType.CHECKBOX:
        if isinstance(value, bool):
            return {"checkbox": value}
        return {"checkbox": str(value).lower() in ("true", "1", "yes", "x")}
    elif field_type == FieldType.NUMBER:
        try:
            return {"number": float(value)}
        except (TypeError, ValueError):
            return None
    return None


# Longest text copied into a content column; the full body lives in the page
CONTENT_PROPERTY_LIMIT = RICH_TEXT_LIMIT


def build_properties(
    bindings: FieldBindings,
    fields: Iterable[SchemaField],
    values: dict[str, Any]
) -> dict[str, dict]:
    """Build a Notion `properties` payload for the bound intents.

    Args:
        bindings: Resolved bindings for the target database.
        fields: The same schema the bindings were resolved from.
        values: Intent name → value. Empty values are skipped.

    Returns:
        Dict of column name → Notion property value.
    """
    types = {f.name: f.type for f in fields}
    properties: dict[str, dict] = {}

    for intent, value in values.items():
        if value is None or value == "" or value == []:
            continue
        name = bindings.get(intent)
        if name is None:
            continue
        if intent == "content":
            value = str(value)[:CONTENT_PROPERTY_LIMIT]
        prop_value = build_property_value(types.get(name, FieldType.OTHER), value)
        if prop_value is None:
            logger.warning(f"Skipping {intent}: value does not fit column '{name}'")
            continue
        properties[name] = prop_value

    return properties
