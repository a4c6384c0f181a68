"""Tests for document loading."""
import pytest

from docqa.rag.loader import DocumentLoader, parse_frontmatter


@pytest.fixture
def documents_dir(tmp_path):
    root = tmp_path / "documents"
    (root / "guides").mkdir(parents=True)
    (root / "readme.txt").write_text("Plain text document.\n", encoding="utf-8")
    (root / "guides" / "setup.md").write_text(
        "---\ntitle: Setup\ncreated: 2024-05-01\ntags: [install]\n---\n# Setup\n\nRun the installer.\n",
        encoding="utf-8",
    )
    (root / "image.png").write_bytes(b"\x89PNG")
    return root


def test_discover_supported_files(documents_dir):
    files = DocumentLoader(documents_dir).discover_files()

    assert [p.name for p in files] == ["setup.md", "readme.txt"]


def test_frontmatter_becomes_metadata(documents_dir):
    document = DocumentLoader(documents_dir).load_file(documents_dir / "guides" / "setup.md")

    assert document.source_id == "guides/setup.md"
    assert document.text == "# Setup\n\nRun the installer.\n"
    assert document.metadata["title"] == "Setup"
    assert document.metadata["created"] == "2024-05-01"
    assert document.metadata["tags"] == ["install"]
    assert document.metadata["file_name"] == "setup.md"


def test_load_all(documents_dir):
    documents = {d.source_id: d for d in DocumentLoader(documents_dir).load_all()}

    assert set(documents) == {"readme.txt", "guides/setup.md"}
    assert documents["readme.txt"].text == "Plain text document.\n"


def test_invalid_frontmatter_is_dropped():
    metadata, body = parse_frontmatter("---\ntitle: [unclosed\n---\nBody text\n")

    assert metadata == {}
    assert body == "Body text\n"


def test_text_without_frontmatter_is_unchanged():
    content = "No frontmatter here.\n---\nnot: yaml\n"
    assert parse_frontmatter(content) == ({}, content)


def test_missing_directory(tmp_path):
    with pytest.raises(FileNotFoundError):
        DocumentLoader(tmp_path / "nope").discover_files()
