"""Metadata trailer writer/reader."""
import json

from app.utils.trailer import TRAILER_START, TrailerParser, format_trailer, split_metadata

META = {"promptTokens": 10, "completionTokens": 20, "totalTokens": 30, "cost": 0.000225}


def _body(text: str) -> str:
    return text + format_trailer(json.dumps(META))


def test_format_trailer_shape():
    assert format_trailer('{"a":1}') == '\n\n__METADATA__{"a":1}__METADATA__'


def test_split_metadata():
    text, meta = split_metadata(_body("2 + 2 = 4"))
    assert text == "2 + 2 = 4"
    assert meta == META


def test_split_without_trailer():
    assert split_metadata("just text") == ("just text", None)


def test_split_broken_json_keeps_body():
    body = "text\n\n__METADATA__{not json__METADATA__"
    assert split_metadata(body) == (body, None)


def test_parser_whole_body_in_one_chunk():
    parser = TrailerParser()
    shown = parser.feed(_body("Hello"))
    rest, meta = parser.finish()
    assert shown + rest == "Hello"
    assert meta == META


def test_parser_marker_split_across_chunks():
    body = _body("Hello world")
    parser = TrailerParser()
    shown = ""
    for i in range(0, len(body), 3):
        shown += parser.feed(body[i:i + 3])
        # never display any part of the trailer
        assert "__META" not in shown
    rest, meta = parser.finish()
    assert shown + rest == "Hello world"
    assert meta == META


def test_parser_holds_back_only_possible_prefix():
    parser = TrailerParser()
    assert parser.feed("line one\n") == "line one"
    assert parser.feed("line two") == "\nline two"


def test_parser_without_trailer_flushes_on_finish():
    parser = TrailerParser()
    shown = parser.feed("partial answer\n\n__META")
    rest, meta = parser.finish()
    assert shown + rest == "partial answer\n\n__META"
    assert meta is None


def test_parser_ignores_text_after_trailer_start():
    parser = TrailerParser()
    parser.feed("answer" + TRAILER_START)
    assert parser.feed('{"cost": 1}') == ""
    assert parser.feed("__METADATA__") == ""
    assert parser.finish() == ("", {"cost": 1})
