import pytest

from reelforge.integrations.llm_provider import LLMResponseError, extract_json_object


def test_plain_json():
    assert extract_json_object('{"a": 1}') == {"a": 1}


def test_fenced_json():
    text = 'Here is the schema:\n```json\n{"version": "1.0", "slots": []}\n```\nDone.'
    assert extract_json_object(text) == {"version": "1.0", "slots": []}


def test_object_embedded_in_prose():
    text = 'Sure! {"label": "a {curly} value", "nested": {"x": [1, 2]}} hope that helps'
    assert extract_json_object(text) == {"label": "a {curly} value", "nested": {"x": [1, 2]}}


@pytest.mark.parametrize("text", ["", "no json here", "[1, 2, 3]"])
def test_no_object_raises(text):
    with pytest.raises(LLMResponseError):
        extract_json_object(text)


def test_truncated_object_raises():
    with pytest.raises(LLMResponseError):
        extract_json_object('{"a": 1, "b": ')
