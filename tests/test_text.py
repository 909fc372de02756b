from ingest.core.text import candidate_key, collapse_whitespace, normalize_for_hash, normalize_optional_text


def test_collapse_whitespace_trims_and_squeezes() -> None:
    assert collapse_whitespace("  Call \n your\t mom  ") == "Call your mom"


def test_normalize_optional_text_maps_blank_to_none() -> None:
    assert normalize_optional_text(None) is None
    assert normalize_optional_text("   ") is None
    assert normalize_optional_text(" a  b ") == "a b"


def test_normalize_for_hash_drops_case_and_punctuation() -> None:
    assert normalize_for_hash("  Hello,   World!_ ") == "hello world"


def test_candidate_key_is_stable_across_cosmetic_changes() -> None:
    first = candidate_key(
        source_key="kindness_blog",
        source_url="https://example.org/ideas/1",
        title="Write a thank-you note",
        description="Takes five minutes.",
    )
    second = candidate_key(
        source_key="kindness_blog",
        source_url="https://example.org/ideas/1",
        title="  write a THANK-YOU note ",
        description="Takes five minutes",
    )
    assert first == second
    assert len(first) == 64


def test_candidate_key_changes_with_content() -> None:
    base = {"source_key": "kindness_blog", "source_url": "https://example.org/ideas/1"}
    assert candidate_key(title="Write a note", **base) != candidate_key(title="Write a letter", **base)
    assert candidate_key(title="Write a note", **base) == candidate_key(title="Write a note", description=None, **base)
