"""Tests for parsing the vision model's output."""
import json

import pytest

from tagfinder.errors import TaggingError
from tagfinder.tagging import OpenAIVisionTagger, extract_output_text, parse_tagging_output


def test_parse_valid_output():
    text = json.dumps(
        {
            "caption": "  A frog in the rain.  ",
            "tags": [
                {"name": " Sad Frog ", "confidence": 0.8, "kind": "emotion"},
                {"name": "rain", "confidence": 1.4},
            ],
        }
    )

    result = parse_tagging_output(text)

    assert result.caption == "A frog in the rain."
    # Names are trimmed but not normalized; the worker re-tokenizes them
    assert [t.name for t in result.tags] == ["Sad Frog", "rain"]
    assert result.tags[0].kind == "emotion"
    assert result.tags[1].confidence == 1.0
    assert result.tags[1].kind is None


def test_malformed_tag_items_are_skipped():
    text = json.dumps(
        {
            "caption": "x",
            "tags": [
                {"name": "ok", "confidence": 0.5},
                {"name": "", "confidence": 0.5},
                {"name": "no-confidence"},
                "just a string",
                {"name": "negative", "confidence": -2},
            ],
        }
    )

    result = parse_tagging_output(text)

    assert [(t.name, t.confidence) for t in result.tags] == [("ok", 0.5), ("negative", 0.0)]


@pytest.mark.parametrize(
    "text",
    [
        "not json",
        "[]",
        '{"tags": []}',
        '{"caption": "x"}',
        '{"caption": 3, "tags": []}',
        '{"caption": "x", "tags": {"name": "sad"}}',
    ],
)
def test_invalid_payload_raises(text):
    with pytest.raises(TaggingError):
        parse_tagging_output(text)


def test_extract_output_text():
    response = {
        "output": [
            {"type": "reasoning", "summary": []},
            {
                "type": "message",
                "role": "assistant",
                "content": [{"type": "output_text", "text": '{"caption": "", "tags": []}'}],
            },
        ]
    }

    assert extract_output_text(response) == '{"caption": "", "tags": []}'


@pytest.mark.parametrize("response", [[], {}, {"output": []}, {"output": [{"type": "message"}]}])
def test_extract_output_text_rejects_unexpected_shapes(response):
    with pytest.raises(TaggingError):
        extract_output_text(response)


async def test_unconfigured_tagger_refuses_calls():
    tagger = OpenAIVisionTagger(api_key="")

    assert tagger.configured is False
    with pytest.raises(TaggingError):
        await tagger.tag_image("https://example.com/a.png")
