from __future__ import annotations

from wykra.chat.markers import IntentMarker, parse_intent_marker, strip_intent_markers


class TestParseIntentMarker:
    def test_bracketed_json_with_params(self):
        text = (
            "Sure, let me look for those creators.\n"
            '[DETECTED_ENDPOINT: {"endpoint": "/instagram/search", "params": {"query": "vegan chefs in Berlin"}}]'
        )
        assert parse_intent_marker(text) == IntentMarker("/instagram/search", {"query": "vegan chefs in Berlin"})

    def test_bracketed_path(self):
        assert parse_intent_marker("On it. [DETECTED_ENDPOINT: /tiktok/profile]").intent == "/tiktok/profile"

    def test_bracketed_is_case_insensitive(self):
        assert parse_intent_marker("[detected_endpoint: /TikTok/Search]").intent == "/tiktok/search"

    def test_explicit_none(self):
        marker = parse_intent_marker("Hello! How can I help?\n[DETECTED_ENDPOINT: none]")
        assert marker == IntentMarker(None)

    def test_aliases_are_canonicalized(self):
        assert parse_intent_marker("[DETECTED_ENDPOINT: /instagram/profile]").intent == "/instagram/analysis"
        assert parse_intent_marker("[DETECTED_ENDPOINT: /tiktok/analysis]").intent == "/tiktok/profile"

    def test_json_embedded_detected_endpoint(self):
        text = 'Here you go {"detectedEndpoint": "/instagram/analysis", "params": {"profile": "chef_ana"}}'
        assert parse_intent_marker(text) == IntentMarker("/instagram/analysis", {"profile": "chef_ana"})

    def test_legacy_single_word(self):
        assert parse_intent_marker("Searching now.\nDETECTED_ENDPOINT: instagram_search").intent == (
            "/instagram/search"
        )

    def test_no_marker(self):
        assert parse_intent_marker("Just a normal answer.") is None
        assert parse_intent_marker("") is None
        assert parse_intent_marker(None) is None

    def test_unknown_endpoint_is_ignored(self):
        assert parse_intent_marker('[DETECTED_ENDPOINT: {"endpoint": "/youtube/search"}]') is None


class TestStripIntentMarkers:
    def test_removes_bracketed_marker(self):
        text = 'Let me search.\n[DETECTED_ENDPOINT: {"endpoint": "/tiktok/search", "params": {"query": "x"}}]'
        assert strip_intent_markers(text) == "Let me search."

    def test_removes_legacy_line(self):
        assert strip_intent_markers("Hi there.\nDETECTED_ENDPOINT: none") == "Hi there."

    def test_leaves_plain_text(self):
        assert strip_intent_markers("  1. First\n2. Second  ") == "1. First\n2. Second"
