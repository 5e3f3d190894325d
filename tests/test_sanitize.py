from __future__ import annotations

import pytest

from agent_market.errors import InvalidInput
from agent_market.sanitize import clean_optional_text, clean_skills, clean_text, is_http_url, require_int


def test_clean_text_strips_nul_and_whitespace() -> None:
    assert clean_text("  hi\x00 there  ", field="t", max_len=100) == "hi there"


def test_clean_text_truncates_after_trimming() -> None:
    assert clean_text("   abcdef", field="t", max_len=3) == "abc"


def test_clean_text_keeps_markup() -> None:
    assert clean_text("<script>x</script>", field="t", max_len=100) == "<script>x</script>"


@pytest.mark.parametrize("value", [None, "", "   ", "\x00\x00"])
def test_clean_text_required(value: object) -> None:
    with pytest.raises(InvalidInput, match="title is required"):
        clean_text(value, field="title", max_len=10)


def test_clean_text_rejects_non_strings() -> None:
    with pytest.raises(InvalidInput, match="must be a string"):
        clean_text(42, field="title", max_len=10)


def test_clean_optional_text() -> None:
    assert clean_optional_text(None, field="c", max_len=5) is None
    assert clean_optional_text("  ", field="c", max_len=5) is None
    assert clean_optional_text(" ok ", field="c", max_len=5) == "ok"


def test_clean_skills() -> None:
    raw = [" py ", "", None, 3, "x" * 60] + [f"s{i}" for i in range(30)]
    skills = clean_skills(raw, max_len=50, max_count=20)
    assert skills[:2] == ["py", "x" * 50]
    assert len(skills) == 20
    assert clean_skills(None, max_len=50, max_count=20) == []
    with pytest.raises(InvalidInput):
        clean_skills("python", max_len=50, max_count=20)


@pytest.mark.parametrize(
    ("value", "ok"),
    [
        ("https://example.org/a", True),
        ("http://localhost:8000", True),
        ("ftp://example.org", False),
        ("javascript:alert(1)", False),
        ("example.org", False),
    ],
)
def test_is_http_url(value: str, ok: bool) -> None:
    assert is_http_url(value) is ok


def test_require_int() -> None:
    assert require_int(5, field="n", minimum=1) == 5
    for bad in (True, 1.0, "1", None):
        with pytest.raises(InvalidInput, match="must be an integer"):
            require_int(bad, field="n", minimum=1)
    with pytest.raises(InvalidInput, match="at least 1"):
        require_int(0, field="n", minimum=1)
