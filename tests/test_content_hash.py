import pytest

from utils import calculate_reading_time, compute_content_hash, html_to_text


def test_hash_is_deterministic_sha256():
    first = compute_content_hash("Title", "<p>Body</p>", "https://example.com/a")
    second = compute_content_hash("Title", "<p>Body</p>", "https://example.com/a")

    assert first == second
    assert len(first) == 64
    int(first, 16)


@pytest.mark.parametrize("changed", [
    ("Titlf", "<p>Body</p>", "https://example.com/a"),
    ("Title", "<p>Bodz</p>", "https://example.com/a"),
    ("Title", "<p>Body</p>", "https://example.com/b"),
])
def test_single_character_change_changes_hash(changed):
    base = compute_content_hash("Title", "<p>Body</p>", "https://example.com/a")

    assert compute_content_hash(*changed) != base


def test_field_boundaries_are_not_ambiguous():
    assert compute_content_hash("ab", "c", "") != compute_content_hash("a", "bc", "")


@pytest.mark.parametrize("args", [
    (None, "body", "link"),
    ("title", b"body", "link"),
    ("title", "body", 42),
])
def test_non_string_input_is_a_type_error(args):
    with pytest.raises(TypeError):
        compute_content_hash(*args)


def test_reading_time_rounds_up_with_minimum_of_one():
    assert calculate_reading_time("") == 1
    assert calculate_reading_time("word " * 200) == 1
    assert calculate_reading_time("word " * 201) == 2


def test_html_to_text_strips_markup_and_truncates():
    html = "<p>Hello   <b>world</b></p><script>x</script>"

    assert html_to_text(html).startswith("Hello world")
    assert html_to_text("<p>" + "a" * 600 + "</p>", max_length=10) == "aaaaaaa..."
    assert len(html_to_text("<p>" + "a" * 600 + "</p>", max_length=None)) == 600
