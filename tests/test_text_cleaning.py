# tests/test_text_cleaning.py
# HTML stripping and truncation for provider descriptions

from Utils.text_cleaning import clean_description, strip_html, truncate


def test_strip_html():
    assert strip_html("<div><p>Hello&nbsp;<b>world</b></p>\n\n</div>") == "Hello world"
    assert strip_html("") == ""
    assert strip_html(None) == ""


def test_truncate():
    assert truncate("short", 10) == "short"
    assert truncate("abcdefghij klm", 10) == "abcdefghij..."
    assert truncate("", 5) == ""


def test_clean_description():
    assert clean_description("<p></p>") == "No description"
    assert clean_description("<p>" + "word " * 200 + "</p>", max_length=20).endswith("...")
