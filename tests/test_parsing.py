from kanthink.parsing import extract_json_array, extract_json_object, markdown_to_html


def test_leading_prose_before_array():
    text = 'Here you go:\n[{"title": "One", "content": "a"}, {"title": "Two", "content": "b"}]\nEnjoy!'
    assert extract_json_array(text) == [
        {"title": "One", "content": "a"},
        {"title": "Two", "content": "b"},
    ]


def test_code_fenced_array():
    text = '```json\n[{"title": "Fenced"}]\n```'
    assert extract_json_array(text) == [{"title": "Fenced"}]


def test_no_array_returns_none():
    assert extract_json_array("I could not think of anything, sorry.") is None
    assert extract_json_array("") is None


def test_brackets_inside_strings_do_not_confuse_the_scan():
    text = 'Cards: [{"title": "Use [brackets] wisely", "content": "x ] y"}]'
    assert extract_json_array(text) == [{"title": "Use [brackets] wisely", "content": "x ] y"}]


def test_invalid_region_is_skipped_for_a_later_valid_one():
    text = "Options [a, b] then the real answer: [{\"title\": \"Real\"}]"
    assert extract_json_array(text) == [{"title": "Real"}]


def test_object_extraction():
    assert extract_json_object('Sure! {"move": false, "reason": "fits"} done') == {"move": False, "reason": "fits"}
    assert extract_json_object("nothing here") is None


def test_markdown_becomes_sanitized_html():
    html = markdown_to_html("## Overview\\n\\n**Bold** point\\n\\n- one\\n- two")
    assert "<h2>Overview</h2>" in html
    assert "<strong>Bold</strong>" in html
    assert "<li>one</li>" in html


def test_markdown_strips_scripts_and_unsafe_links():
    html = markdown_to_html('Hi <script>alert(1)</script> [x](javascript:void)')
    assert "<script>" not in html
    assert "javascript:" not in html
