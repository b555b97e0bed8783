"""Plain text <-> Atlassian Document Format (ADF) conversion."""

from typing import Any, Dict, Optional

# Nodes whose children are blocks (joined by newlines).
_BLOCK_CONTAINERS = {
    "doc",
    "blockquote",
    "bulletList",
    "orderedList",
    "listItem",
    "taskList",
    "taskItem",
    "panel",
    "expand",
    "nestedExpand",
    "table",
    "tableRow",
    "tableCell",
    "tableHeader",
    "layoutSection",
    "layoutColumn",
}

# Nodes whose children are inline (concatenated).
_INLINE_CONTAINERS = {"paragraph", "heading", "codeBlock"}


def encode(text: Optional[str]) -> Dict[str, Any]:
    """Wrap plain text as a single-paragraph ADF document."""
    paragraph: Dict[str, Any] = {"type": "paragraph", "content": []}
    if text:
        # ADF rejects empty text nodes.
        paragraph["content"].append({"type": "text", "text": text})
    return {"type": "doc", "version": 1, "content": [paragraph]}


def decode(document: Any) -> str:
    """Flatten an ADF document into plain text.

    Unknown node types are skipped rather than rejected so documents written
    by other Jira clients always decode.
    """
    if isinstance(document, str):
        return document.strip()
    return (_decode_node(document) or "").strip()


def _decode_node(node: Any) -> Optional[str]:
    if not isinstance(node, dict):
        return None

    node_type = node.get("type")
    if node_type == "text":
        text = node.get("text")
        return text if isinstance(text, str) else ""
    if node_type == "hardBreak":
        return "\n"

    if node_type in _BLOCK_CONTAINERS:
        separator = "\n"
    elif node_type in _INLINE_CONTAINERS:
        separator = ""
    else:
        return None

    children = node.get("content")
    if not isinstance(children, list):
        return ""
    parts = [part for part in (_decode_node(child) for child in children) if part is not None]
    return separator.join(parts)
