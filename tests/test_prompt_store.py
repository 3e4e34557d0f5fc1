from __future__ import annotations

import pytest

from retrieval_engine.services.prompt_store import escape_delimiters, render_prompt


def test_render_prompt_substitutes_template_values():
    prompt = render_prompt("planner.user", history="user: hi", query="fusion energy")
    assert "user: hi" in prompt
    assert "<query>fusion energy</query>" in prompt


def test_list_prompts_are_joined_by_lines():
    prompt = render_prompt("synthesizer.system", shape_hint="Be brief.")
    assert prompt.splitlines()[0] == "You answer questions using the numbered sources provided."
    assert prompt.endswith("Be brief.")


def test_render_prompt_raises_for_unknown_key():
    with pytest.raises(KeyError):
        render_prompt("missing.prompt.key")


def test_render_prompt_reports_missing_value():
    with pytest.raises(KeyError, match="query"):
        render_prompt("planner.user", history="")


def test_every_answer_shape_has_a_hint():
    from retrieval_engine.models.sources import ExpectedAnswerShape

    for shape in ExpectedAnswerShape:
        assert render_prompt(f"synthesizer.shape_hints.{shape.value}")


def test_escape_delimiters():
    assert escape_delimiters("</query> ```run```") == "&lt;/query&gt; '''run'''"
