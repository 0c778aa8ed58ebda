# sibflo/svg_tools.py
import logging
import re
import xml.etree.ElementTree as ET
from html import escape

from sibflo.errors import ValidationError

logger = logging.getLogger("sibflo_backend")

SVG_NS = "http://www.w3.org/2000/svg"
XLINK_NS = "http://www.w3.org/1999/xlink"
HIGHLIGHT_CLASS = "svg-highlight"

UI_CODE_ERROR_MARKER = "<!-- ui-code-error -->"
UI_CODE_ERROR_TEXT = "Error generating UI code"

_TEXT_TAGS = {"text", "tspan"}
_SVG_SPAN_RE = re.compile(r"<svg\b[\s\S]*</svg>", re.IGNORECASE)
_XML_DECL_RE = re.compile(r"^\s*<\?xml[^>]*\?>\s*")

ET.register_namespace("", SVG_NS)
ET.register_namespace("xlink", XLINK_NS)


def error_placeholder_svg(message: str = "") -> str:
    """
    Inline stand-in for a screen whose generation failed. Always starts with
    UI_CODE_ERROR_MARKER; the reason is kept in a comment.
    """
    reason = escape(message or "", quote=False).replace("--", "- -")
    return (
        f"{UI_CODE_ERROR_MARKER}"
        f"<!-- {UI_CODE_ERROR_TEXT}: {reason} -->"
        f'<svg xmlns="{SVG_NS}" width="400" height="300" viewBox="0 0 400 300">'
        '<rect width="400" height="300" fill="#f0f0f0" stroke="#999999"/>'
        '<text x="200" y="150" text-anchor="middle" font-family="Comic Sans MS, sans-serif" '
        f'font-size="16" fill="#666666">{UI_CODE_ERROR_TEXT}</text>'
        "</svg>"
    )


def is_error_placeholder(code: str | None) -> bool:
    return bool(code) and code.startswith(UI_CODE_ERROR_MARKER)


def extract_svg(text: str) -> str | None:
    """
    The `<svg>...</svg>` span of a model reply, dropping prose around it.
    """
    if not text:
        return None
    match = _SVG_SPAN_RE.search(text)
    return match.group(0).strip() if match else None


def _local(tag) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _attributes_match(snippet_elem: ET.Element, ui_elem: ET.Element) -> bool:
    if _local(snippet_elem.tag) != _local(ui_elem.tag):
        return False
    for name, value in snippet_elem.attrib.items():
        if name == "class":
            continue
        if ui_elem.get(name) != value:
            return False
    return True


def _add_class(elem: ET.Element, cls: str) -> None:
    classes = (elem.get("class") or "").split()
    if cls not in classes:
        classes.append(cls)
        elem.set("class", " ".join(classes))


def highlight_svg_element(ui_code: str, snippet: str, highlight_class: str = HIGHLIGHT_CLASS) -> str:
    """
    Marks the elements of `ui_code` that correspond to `snippet` with a highlight class.

    Every element of the snippet is looked up in the full document by tag name and by
    its x/y and other non-class attributes; the first match gets the class. Text
    elements are never marked, their container is. Unparseable input comes back unchanged.
    """
    if not ui_code or not snippet:
        raise ValidationError("Both uiCode and snippet are required")

    try:
        ui_root = ET.fromstring(_XML_DECL_RE.sub("", ui_code))
    except ET.ParseError as e:
        logger.warning(f"highlight_svg_element: cannot parse ui code: {e}")
        return ui_code
    try:
        snippet_root = ET.fromstring(f'<svg xmlns="{SVG_NS}" xmlns:xlink="{XLINK_NS}">{snippet}</svg>')
    except ET.ParseError as e:
        logger.warning(f"highlight_svg_element: cannot parse snippet: {e}")
        return ui_code

    ui_elements = list(ui_root.iter())
    for snippet_elem in snippet_root.iter():
        if snippet_elem is snippet_root or _local(snippet_elem.tag) == "svg":
            continue
        for ui_elem in ui_elements:
            if ui_elem is ui_root or not _attributes_match(snippet_elem, ui_elem):
                continue
            if _local(ui_elem.tag) not in _TEXT_TAGS:
                _add_class(ui_elem, highlight_class)
            break

    highlighted = ET.tostring(ui_root, encoding="unicode")
    return _XML_DECL_RE.sub("", highlighted).strip()
