"""Document loader for plain text and markdown files.

Handles:
- File discovery under a root directory
- YAML frontmatter parsing into per-document metadata
- Stable source ids (path relative to the root)
"""
import re
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import structlog
import yaml

from docqa import config
from docqa.models import SourceDocument

logger = structlog.get_logger()

SUPPORTED_SUFFIXES = (".txt", ".md")

# Regex for YAML frontmatter (must be at start of file)
FRONTMATTER_PATTERN = re.compile(r"^---\s*\n(.*?)\n---\s*\n", re.DOTALL)


def parse_frontmatter(content: str) -> Tuple[Dict[str, Any], str]:
    """Split YAML frontmatter from the document body.

    Args:
        content: Full file content

    Returns:
        Tuple of (frontmatter_dict, content_without_frontmatter)
    """
    match = FRONTMATTER_PATTERN.match(content)

    if not match:
        return {}, content

    yaml_content = match.group(1)
    try:
        frontmatter = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        logger.warning(
            "frontmatter_parse_error",
            error=str(e),
            yaml_preview=yaml_content[:100],
        )
        frontmatter = {}

    if not isinstance(frontmatter, dict):
        frontmatter = {}

    # Dates stay JSON-serializable in stored metadata
    for key, value in list(frontmatter.items()):
        if hasattr(value, "isoformat"):
            frontmatter[key] = value.isoformat()

    return frontmatter, content[match.end():]


class DocumentLoader:
    """Loads documents from a directory as SourceDocument objects."""

    def __init__(self, root_dir: Optional[Path] = None):
        self.root_dir = Path(root_dir or config.DOCUMENTS_DIR)

    def is_supported(self, path: Path) -> bool:
        return path.suffix.lower() in SUPPORTED_SUFFIXES

    def source_id_for(self, path: Path) -> str:
        """Source id of a file: its POSIX path relative to the root."""
        path = Path(path)
        try:
            return path.resolve().relative_to(self.root_dir.resolve()).as_posix()
        except ValueError:
            return path.as_posix()

    def discover_files(self) -> List[Path]:
        """Find all supported files under the root directory.

        Raises:
            FileNotFoundError: If the root directory does not exist
        """
        if not self.root_dir.is_dir():
            raise FileNotFoundError(f"Documents directory not found: {self.root_dir}")

        files = sorted(
            p for p in self.root_dir.rglob("*")
            if p.is_file() and self.is_supported(p)
        )

        logger.info("documents_discovered", root_dir=str(self.root_dir), count=len(files))
        return files

    def load_file(self, path: Path) -> SourceDocument:
        """Read a file into a SourceDocument.

        Args:
            path: File to read

        Returns:
            SourceDocument with frontmatter moved into metadata

        Raises:
            FileNotFoundError: If file doesn't exist
            UnicodeDecodeError: If file encoding is invalid
        """
        path = Path(path)
        try:
            content = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            logger.error("document_encoding_error", path=str(path), error=str(e))
            raise

        frontmatter, text = parse_frontmatter(content)
        source_id = self.source_id_for(path)

        metadata = dict(frontmatter)
        metadata["file_name"] = path.name

        logger.debug(
            "document_loaded",
            source_id=source_id,
            has_frontmatter=bool(frontmatter),
            content_length=len(text),
        )

        return SourceDocument(source_id=source_id, text=text, metadata=metadata)

    def load_all(self) -> Iterator[SourceDocument]:
        """Load every supported file, skipping unreadable ones."""
        for path in self.discover_files():
            try:
                yield self.load_file(path)
            except (OSError, UnicodeDecodeError) as e:
                logger.error(
                    "document_load_failed",
                    path=str(path),
                    error=str(e),
                    error_type=type(e).__name__,
                )
