"""
Tests for generic template element parsing.
"""

import json

from dm_pilot.templates import MAX_BUTTONS, MAX_ELEMENTS, is_valid_element, parse_template_elements


class TestParseTemplateElements:
    """Tests for stored template payloads."""

    def test_valid_payload(self):
        raw = json.dumps([{
            "title": "Starter",
            "subtitle": "$99/mo",
            "image_url": "https://img/1.png",
            "default_action": {"type": "web_url", "url": "https://acme/start"},
            "buttons": [{"type": "web_url", "url": "https://acme/buy", "title": "Buy"}],
            "unknown": "dropped",
        }])

        elements = parse_template_elements(raw)

        assert elements == [{
            "title": "Starter",
            "subtitle": "$99/mo",
            "image_url": "https://img/1.png",
            "default_action": {"type": "web_url", "url": "https://acme/start"},
            "buttons": [{"type": "web_url", "url": "https://acme/buy", "title": "Buy"}],
        }]

    def test_text_used_as_title(self):
        elements = parse_template_elements(json.dumps([{"text": "Card"}]))
        assert elements == [{"title": "Card"}]

    def test_invalid_elements_dropped(self):
        raw = json.dumps([{"title": ""}, {"subtitle": "no title"}, "string", {"title": "ok"}])
        assert parse_template_elements(raw) == [{"title": "ok"}]

    def test_buttons_filtered_and_capped(self):
        buttons = [
            {"type": "postback", "title": "No", "payload": "x"},
            {"type": "web_url", "url": "https://a", "title": "A"},
            {"type": "web_url", "url": "https://b", "title": "B"},
            {"type": "web_url", "url": 5, "title": "Bad"},
            {"type": "web_url", "url": "https://c", "title": "C"},
            {"type": "web_url", "url": "https://d", "title": "D"},
        ]
        elements = parse_template_elements(json.dumps([{"title": "T", "buttons": buttons}]))
        assert [b["title"] for b in elements[0]["buttons"]] == ["A", "B", "C"]
        assert len(elements[0]["buttons"]) == MAX_BUTTONS

    def test_elements_capped(self):
        raw = json.dumps([{"title": f"card {i}"} for i in range(15)])
        assert len(parse_template_elements(raw)) == MAX_ELEMENTS

    def test_invalid_json(self):
        assert parse_template_elements("{not json") == []

    def test_not_an_array(self):
        assert parse_template_elements('{"title": "x"}') == []

    def test_empty(self):
        assert parse_template_elements(None) == []
        assert parse_template_elements("") == []


class TestIsValidElement:
    def test_buttons_must_be_list(self):
        assert not is_valid_element({"title": "T", "buttons": "nope"})
        assert is_valid_element({"title": "T", "buttons": None})
