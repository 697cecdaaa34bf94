"""Package reference removal for MSBuild project files.

Works on both SDK-style projects (no namespace) and legacy projects that
declare the MSBuild 2003 namespace. Parsing goes through defusedxml, so
entity expansion and external entities in a checked-in project file are
rejected instead of resolved.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from xml.etree import ElementTree

from defusedxml import ElementTree as SafeElementTree
from defusedxml.common import DefusedXmlException

from .config import MAX_PROJECT_FILE_SIZE_BYTES

logger = logging.getLogger(__name__)

MSBUILD_NAMESPACE = "http://schemas.microsoft.com/developer/msbuild/2003"
PACKAGE_REFERENCE_TAG = "PackageReference"
REFERENCE_ATTRIBUTES = ("Include", "Update")

# Declaration plus the whitespace before the root element, after an optional BOM
XML_DECLARATION_PATTERN = re.compile(rb"\A(?:\xef\xbb\xbf)?(<\?xml[^>]*\?>\s*)")


class ProjectFileError(Exception):
    """Raised when a project file cannot be read or written."""

    pass


def _local_name(tag: str) -> str:
    """Strip an ElementTree ``{namespace}`` prefix from a tag."""
    return tag.rsplit("}", 1)[-1] if tag.startswith("{") else tag


def _references_package(element: ElementTree.Element, package_name: str) -> bool:
    wanted = package_name.strip().lower()
    for attribute in REFERENCE_ATTRIBUTES:
        value = element.get(attribute)
        if value is not None and value.strip().lower() == wanted:
            return True
    return False


def remove_package_reference(
    document: ElementTree.ElementTree | ElementTree.Element,
    package_name: str,
) -> int:
    """Remove every reference to a package from a project document.

    Matches ``PackageReference`` elements by their ``Include`` or ``Update``
    attribute, case-insensitively (NuGet package IDs are case-insensitive).
    Enclosing ``ItemGroup`` elements are left in place even when emptied.

    Args:
        document: Parsed project file or its root element. Modified in place.
        package_name: Package ID to remove.

    Returns:
        Number of elements removed; 0 if the package was not referenced.
    """
    root = document.getroot() if isinstance(document, ElementTree.ElementTree) else document

    # ElementTree has no parent pointers
    parents = {child: parent for parent in root.iter() for child in parent}

    matches = [
        element
        for element in root.iter()
        if isinstance(element.tag, str)
        and _local_name(element.tag) == PACKAGE_REFERENCE_TAG
        and element in parents
        and _references_package(element, package_name)
    ]

    for element in matches:
        parents[element].remove(element)

    if matches:
        logger.info(
            "Removed package reference",
            extra={"package": package_name, "removed": len(matches)},
        )
    else:
        logger.debug("Package reference not found", extra={"package": package_name})

    return len(matches)


class ProjectDocument(ElementTree.ElementTree):
    """A parsed project file that remembers its XML declaration."""

    def __init__(self, root: ElementTree.Element, declaration: str | None = None) -> None:
        super().__init__(root)
        self.declaration = declaration


def load_project_file(path: Path) -> ProjectDocument:
    """Parse a project file, keeping comments and the XML declaration.

    Raises:
        ProjectFileError: If the file is missing, too large or not
            well-formed XML, or uses forbidden XML constructs.
    """
    if not path.is_file():
        raise ProjectFileError(f"Project file not found: {path}")

    size = path.stat().st_size
    if size > MAX_PROJECT_FILE_SIZE_BYTES:
        raise ProjectFileError(
            f"Project file {path} is {size} bytes, max allowed is {MAX_PROJECT_FILE_SIZE_BYTES}"
        )

    content = path.read_bytes()
    parser = SafeElementTree.XMLParser(target=ElementTree.TreeBuilder(insert_comments=True))
    try:
        parser.feed(content)
        root = parser.close()
    except ElementTree.ParseError as e:
        raise ProjectFileError(f"Invalid XML in {path}: {e}") from e
    except DefusedXmlException as e:
        raise ProjectFileError(f"Forbidden XML construct in {path}: {e}") from e

    match = XML_DECLARATION_PATTERN.match(content)
    declaration = match.group(1).decode("utf-8") if match else None
    return ProjectDocument(root, declaration)


def save_project_file(document: ElementTree.ElementTree, path: Path) -> None:
    """Write a project document back to disk as UTF-8.

    The original XML declaration is written back verbatim, and legacy
    namespaced projects keep their default namespace. Comments inside the
    root element survive; anything outside it does not.
    """
    root = document.getroot()
    if root.tag.startswith(f"{{{MSBUILD_NAMESPACE}}}"):
        ElementTree.register_namespace("", MSBUILD_NAMESPACE)

    declaration = getattr(document, "declaration", None) or ""
    body = ElementTree.tostring(root, encoding="unicode")

    try:
        path.write_text(f"{declaration}{body}\n", encoding="utf-8")
    except OSError as e:
        raise ProjectFileError(f"Failed to write {path}: {e}") from e
