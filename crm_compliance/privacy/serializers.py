"""
Export serializers.

Renders a collected data bundle as JSON, CSV or XML.
"""

import csv
import json
import re
from typing import Any, Callable, Dict, List, Mapping, Optional
from xml.sax.saxutils import escape, quoteattr

import pandas as pd

from ..exceptions import UnsupportedFormatError
from ..utils import utc_now
from .models import ExportFormat

XML_ROOT = "UserDataExport"
XML_HEADER = '<?xml version="1.0" encoding="UTF-8"?>\n'
CSV_COLUMNS = ["Section", "Key", "Value", "Date"]

_XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}
_XML_NAME = re.compile(r"^(?![Xx][Mm][Ll])[A-Za-z_][A-Za-z0-9_.-]*$")


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def to_json(bundle: Mapping[str, Any]) -> str:
    """Stable JSON with sorted keys and two-space indentation."""
    return json.dumps(bundle, indent=2, sort_keys=True, default=str)


def to_csv(bundle: Mapping[str, Any], exported_at: Optional[str] = None) -> str:
    """
    Flatten the bundle into ``Section,Key,Value,Date`` rows.

    Nested mappings are walked with a dot-joined section path; lists are
    written as JSON text.
    """
    exported_at = exported_at or utc_now().isoformat()
    rows: List[Dict[str, str]] = []

    def walk(node: Mapping[str, Any], section: str) -> None:
        for key, value in node.items():
            if isinstance(value, Mapping):
                walk(value, f"{section}.{key}" if section else str(key))
                continue
            if isinstance(value, list):
                text = json.dumps(value, default=str)
            elif value is None:
                text = ""
            else:
                text = _scalar_text(value)
            rows.append(
                {"Section": section, "Key": str(key), "Value": text, "Date": exported_at}
            )

    walk(bundle, "")

    df = pd.DataFrame(rows, columns=CSV_COLUMNS)
    return df.to_csv(index=False, quoting=csv.QUOTE_ALL, lineterminator="\n")


def to_xml(bundle: Mapping[str, Any], root: str = XML_ROOT) -> str:
    """
    Render the bundle as nested XML elements.

    List entries become ``<item>`` children and None an empty element. Keys
    that are not valid element names are written as ``<item key="...">``.
    """
    return XML_HEADER + _xml_element(root, bundle)


def _xml_element(name: str, value: Any) -> str:
    tag, open_tag = name, name
    if not _XML_NAME.match(name):
        tag, open_tag = "item", f"item key={quoteattr(name)}"

    if value is None:
        return f"<{open_tag}></{tag}>"
    if isinstance(value, Mapping):
        children = "".join(_xml_element(str(k), v) for k, v in value.items())
        return f"<{open_tag}>{children}</{tag}>"
    if isinstance(value, list):
        children = "".join(_xml_element("item", v) for v in value)
        return f"<{open_tag}>{children}</{tag}>"
    return f"<{open_tag}>{escape(_scalar_text(value), _XML_ENTITIES)}</{tag}>"


SERIALIZERS: Dict[str, Callable[[Mapping[str, Any]], str]] = {
    ExportFormat.JSON.value: to_json,
    ExportFormat.CSV.value: to_csv,
    ExportFormat.XML.value: to_xml,
}


def resolve_format(export_format: Any) -> ExportFormat:
    """
    Validate an export format name.

    Raises:
        UnsupportedFormatError: The format is not json, csv or xml
    """
    value = getattr(export_format, "value", export_format)
    try:
        return ExportFormat(str(value).lower())
    except ValueError:
        raise UnsupportedFormatError(str(value)) from None


def serialize(bundle: Mapping[str, Any], export_format: Any = "json") -> str:
    """Serialize a bundle in the requested format."""
    return SERIALIZERS[resolve_format(export_format).value](bundle)
