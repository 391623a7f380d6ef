"""Tests for schema_mapper - intent resolution and property envelopes."""

import pytest
from schema_mapper import (
    CONTENT_PROPERTY_LIMIT,
    RESOLUTION_RULES,
    FieldBindings,
    FieldType,
    SchemaField,
    build_properties,
    build_property_value,
    fields_from_notion,
    resolve,
)


def F(name, type_):
    return SchemaField(name, type_)


class TestFieldsFromNotion:
    """Tests for adapting Notion data source properties."""

    def test_maps_known_types_in_order(self):
        props = {
            "Name": {"id": "title", "type": "title", "title": {}},
            "Notes": {"id": "a", "type": "rich_text"},
            "Stage": {"id": "b", "type": "status"},
            "Owner": {"id": "c", "type": "people"},
        }
        assert fields_from_notion(props) == [
            F("Name", FieldType.TITLE),
            F("Notes", FieldType.TEXT),
            F("Stage", FieldType.STATUS),
            F("Owner", FieldType.OTHER),
        ]

    def test_empty_or_none(self):
        assert fields_from_notion({}) == []
        assert fields_from_notion(None) == []


class TestResolveTitle:
    """Tests for title resolution."""

    def test_single_title_field(self):
        assert resolve([F("Name", FieldType.TITLE)]).title == "Name"

    def test_fallback_to_first_title_typed_field(self):
        fields = [F("Topic", FieldType.TITLE), F("Other", FieldType.TEXT)]
        assert resolve(fields).title == "Topic"

    def test_korean_candidate(self):
        assert resolve([F(" 제목 ", FieldType.TITLE)]).title == " 제목 "

    def test_title_named_text_field_is_not_title(self):
        fields = [F("Title", FieldType.TEXT)]
        assert resolve(fields).title is None

    def test_no_title_field_is_unresolved_not_error(self):
        bindings = resolve([F("Notes", FieldType.TEXT)])
        assert bindings.title is None


class TestResolveTypedIntents:
    """Tests for url, date and tags resolution."""

    def test_name_match(self):
        fields = [
            F("Name", FieldType.TITLE),
            F("Link", FieldType.URL),
            F("날짜", FieldType.DATE),
            F("Tags", FieldType.MULTI_SELECT),
        ]
        bindings = resolve(fields)
        assert bindings.url == "Link"
        assert bindings.date == "날짜"
        assert bindings.tags == "Tags"

    def test_mistyped_name_falls_through_to_type(self):
        fields = [
            F("Name", FieldType.TITLE),
            F("URL", FieldType.TEXT),
            F("Source", FieldType.URL),
        ]
        assert resolve(fields).url == "Source"

    def test_mistyped_name_without_typed_field_is_unresolved(self):
        fields = [F("Name", FieldType.TITLE), F("Date", FieldType.TEXT)]
        assert resolve(fields).date is None

    def test_name_match_beats_earlier_typed_field(self):
        fields = [
            F("Name", FieldType.TITLE),
            F("Created", FieldType.DATE),
            F("date", FieldType.DATE),
        ]
        assert resolve(fields).date == "date"


class TestResolveStatus:
    """Tests for status resolution."""

    def test_mistyped_status_falls_back_to_select(self):
        fields = [F("status", FieldType.TEXT), F("Progress", FieldType.SINGLE_SELECT)]
        assert resolve(fields).status == "Progress"

    def test_status_type_preferred_over_select(self):
        fields = [
            F("Status", FieldType.SINGLE_SELECT),
            F("status", FieldType.STATUS),
        ]
        assert resolve(fields).status == "status"

    def test_select_named_status(self):
        fields = [F("Name", FieldType.TITLE), F("상태", FieldType.SINGLE_SELECT)]
        assert resolve(fields).status == "상태"

    def test_fallback_prefers_status_typed_field(self):
        fields = [F("Kind", FieldType.SINGLE_SELECT), F("Stage", FieldType.STATUS)]
        assert resolve(fields).status == "Stage"


class TestResolveTextIntents:
    """Tests for recordId, recordUrl, parentRef and content."""

    def test_record_fields_by_name_only(self):
        fields = [
            F("Name", FieldType.TITLE),
            F("PageId", FieldType.TEXT),
            F("page_url", FieldType.URL),
        ]
        bindings = resolve(fields)
        assert bindings.record_id == "PageId"
        assert bindings.record_url == "page_url"

    def test_record_id_has_no_type_fallback(self):
        fields = [F("Name", FieldType.TITLE), F("Notes", FieldType.TEXT)]
        assert resolve(fields).record_id is None

    def test_record_id_must_be_text(self):
        fields = [F("Name", FieldType.TITLE), F("pid", FieldType.NUMBER)]
        assert resolve(fields).record_id is None

    def test_content_by_name(self):
        fields = [F("Name", FieldType.TITLE), F("Summary", FieldType.TEXT), F("본문", FieldType.TEXT)]
        assert resolve(fields).content == "본문"

    def test_content_fallback_skips_claimed_fields(self):
        fields = [
            F("Name", FieldType.TITLE),
            F("recordId", FieldType.TEXT),
            F("recordUrl", FieldType.TEXT),
            F("Parent", FieldType.TEXT),
            F("Summary", FieldType.TEXT),
        ]
        bindings = resolve(fields)
        assert bindings.record_id == "recordId"
        assert bindings.record_url == "recordUrl"
        assert bindings.parent_ref == "Parent"
        assert bindings.content == "Summary"

    def test_content_unresolved_without_free_text_field(self):
        fields = [F("Name", FieldType.TITLE), F("pageId", FieldType.TEXT)]
        assert resolve(fields).content is None


class TestResolveGeneral:
    """Tests for resolution as a whole."""

    def test_empty_schema(self):
        assert resolve([]) == FieldBindings()

    def test_deterministic(self):
        fields = [F("Name", FieldType.TITLE), F("Tags", FieldType.MULTI_SELECT)]
        assert resolve(fields) == resolve(list(fields))

    def test_rule_order(self):
        assert [r.intent for r in RESOLUTION_RULES] == [
            "title", "url", "date", "tags", "status",
            "recordId", "recordUrl", "parentRef", "content",
        ]

    def test_get_accepts_intent_and_attr_names(self):
        bindings = FieldBindings(record_id="pid")
        assert bindings.get("recordId") == "pid"
        assert bindings.get("record_id") == "pid"
        assert bindings.get("url") is None

    def test_as_dict_uses_intent_names(self):
        bindings = FieldBindings(title="Name", record_url="purl")
        assert bindings.as_dict() == {"title": "Name", "recordUrl": "purl"}


# =============================================================================
# Property Envelopes
# =============================================================================


class TestBuildPropertyValue:
    """Tests for build_property_value."""

    def test_title(self):
        assert build_property_value(FieldType.TITLE, "Hi") == {
            "title": [{"type": "text", "text": {"content": "Hi"}}]
        }

    def test_text(self):
        assert build_property_value(FieldType.TEXT, "x") == {
            "rich_text": [{"type": "text", "text": {"content": "x"}}]
        }

    def test_url(self):
        assert build_property_value(FieldType.URL, "https://a.b") == {"url": "https://a.b"}

    def test_date(self):
        assert build_property_value(FieldType.DATE, "2024-05-01") == {"date": {"start": "2024-05-01"}}

    def test_multi_select_from_list(self):
        assert build_property_value(FieldType.MULTI_SELECT, ["a", " b ", ""]) == {
            "multi_select": [{"name": "a"}, {"name": "b"}]
        }

    def test_multi_select_from_csv(self):
        assert build_property_value(FieldType.MULTI_SELECT, "a, b") == {
            "multi_select": [{"name": "a"}, {"name": "b"}]
        }

    def test_select_and_status(self):
        assert build_property_value(FieldType.SINGLE_SELECT, "Open") == {"select": {"name": "Open"}}
        assert build_property_value(FieldType.STATUS, "Done") == {"status": {"name": "Done"}}

    @pytest.mark.parametrize("value,expected", [
        (True, True),
        (False, False),
        ("yes", True),
        ("no", False),
    ])
    def test_checkbox(self, value, expected):
        assert build_property_value(FieldType.CHECKBOX, value) == {"checkbox": expected}

    def test_number(self):
        assert build_property_value(FieldType.NUMBER, "3.5") == {"number": 3.5}
        assert build_property_value(FieldType.NUMBER, "lots") is None

    def test_other_is_none(self):
        assert build_property_value(FieldType.OTHER, "x") is None


class TestBuildProperties:
    """Tests for build_properties."""

    FIELDS = [
        F("Name", FieldType.TITLE),
        F("Link", FieldType.URL),
        F("Tags", FieldType.MULTI_SELECT),
        F("Status", FieldType.STATUS),
        F("Content", FieldType.TEXT),
        F("pageId", FieldType.TEXT),
    ]

    def test_builds_bound_values(self):
        bindings = resolve(self.FIELDS)
        props = build_properties(bindings, self.FIELDS, {
            "title": "Note",
            "url": "https://x.y",
            "tags": ["a"],
            "status": "Done",
            "recordId": "abc",
        })
        assert set(props) == {"Name", "Link", "Tags", "Status", "pageId"}
        assert props["Status"] == {"status": {"name": "Done"}}
        assert props["pageId"]["rich_text"][0]["text"]["content"] == "abc"

    def test_skips_empty_and_unbound(self):
        bindings = resolve(self.FIELDS)
        props = build_properties(bindings, self.FIELDS, {
            "title": "Note",
            "url": None,
            "tags": [],
            "date": "2024-01-01",
            "status": "",
        })
        assert list(props) == ["Name"]

    def test_content_is_truncated(self):
        bindings = resolve(self.FIELDS)
        props = build_properties(bindings, self.FIELDS, {"content": "x" * (CONTENT_PROPERTY_LIMIT + 50)})
        segments = props["Content"]["rich_text"]
        assert sum(len(s["text"]["content"]) for s in segments) == CONTENT_PROPERTY_LIMIT

    def test_unfit_value_skipped_with_warning(self, caplog):
        fields = [F("Name", FieldType.TITLE), F("Status", FieldType.SINGLE_SELECT)]
        bindings = FieldBindings(title="Name", status="Missing")
        with caplog.at_level("WARNING", logger="notes-bridge.schema"):
            props = build_properties(bindings, fields, {"title": "t", "status": "x"})
        assert list(props) == ["Name"]
        assert "does not fit" in caplog.text
