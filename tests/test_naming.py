import re

from shala.services.naming import (
    build_unique_name,
    extract_artifact_id,
    normalize_extension,
    slugify,
)


NAME_PATTERN = re.compile(
    r"^(?P<stem>[a-z0-9-]+)-(?P<millis>\d{13,})-(?P<random>\d{9})-"
    r"(?P<uuid>[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})(?P<ext>\.[a-z0-9]+)$"
)


def test_slugify_collapses_symbols() -> None:
    assert slugify("  Class 10: Maths!  ") == "class-10-maths"
    assert slugify("***") == "item"


def test_normalize_extension_falls_back_to_default() -> None:
    assert normalize_extension("Notes.PDF") == ".pdf"
    assert normalize_extension("archive") == ".pdf"
    assert normalize_extension("weird.ext with space") == ".pdf"
    assert normalize_extension(None, ".bin") == ".bin"


def test_build_unique_name_layout() -> None:
    artifact_id, name = build_unique_name("temp-pdf", "Chapter 1.PDF")

    match = NAME_PATTERN.match(name)
    assert match is not None
    assert match.group("stem") == "temp-pdf"
    assert match.group("uuid") == artifact_id
    assert match.group("ext") == ".pdf"


def test_build_unique_name_never_repeats() -> None:
    names = {build_unique_name("pdf", "a.pdf")[1] for _ in range(500)}

    assert len(names) == 500


def test_extract_artifact_id_recovers_uuid_or_stem() -> None:
    artifact_id, name = build_unique_name("pdf", "a.pdf")

    assert extract_artifact_id(name) == artifact_id
    assert extract_artifact_id("legacy-upload.pdf") == "legacy-upload"
