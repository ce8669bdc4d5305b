from __future__ import annotations

import json

import pytest

from wykra.services import prompt_store
from wykra.services.prompt_store import clear_prompt_cache, prompt_keys, render_prompt


def test_render_prompt_substitutes_template_values():
    prompt = render_prompt("chat.extract_query", user_query="fitness creators in Warsaw")
    assert '"fitness creators in Warsaw"' in prompt
    assert '{"missing": "query"}' in prompt


def test_line_lists_are_joined():
    prompt = render_prompt("chat.system_prompt")
    assert "\n[DETECTED_ENDPOINT: none]\n" in prompt


def test_render_prompt_raises_for_unknown_key():
    with pytest.raises(KeyError):
        render_prompt("missing.prompt.key")


def test_render_prompt_reports_missing_values():
    with pytest.raises(KeyError, match="user_query"):
        render_prompt("chat.extract_profile")


def test_catalog_is_reloaded_after_clear(tmp_path, monkeypatch):
    catalog = tmp_path / "prompts.json"
    catalog.write_text(json.dumps({"greeting": "Hello $name"}), encoding="utf-8")
    monkeypatch.setattr(prompt_store, "PROMPTS_PATH", catalog)
    clear_prompt_cache()
    try:
        assert render_prompt("greeting", name="Ana") == "Hello Ana"

        catalog.write_text(json.dumps({"greeting": {"nested": 1}}), encoding="utf-8")
        clear_prompt_cache()
        with pytest.raises(TypeError):
            render_prompt("greeting")
    finally:
        clear_prompt_cache()


def test_prompt_keys_cover_chat_prompts():
    keys = prompt_keys()
    assert {"chat.system_prompt", "chat.extract_query", "chat.extract_profile"} <= set(keys)
    assert all(not key.endswith(".") for key in keys)
