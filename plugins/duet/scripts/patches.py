#!/usr/bin/env python3
"""
Duet Arena Notepad Patches

The `np-*` tag language personas use to edit the shared notepad:

    <np-NAME attr="value" ...>content</np-NAME>
    <np-NAME attr="value" ... />

`parse_response` splits a raw model reply into the spoken text and an
ordered list of patch operations; `apply_patches` folds those operations
over a document. Neither function raises on bad input: unknown tags are
dropped, malformed tags stay in the spoken text, out-of-range lines are
no-ops.
"""
from __future__ import annotations

import dataclasses
import logging
import re
import string
from typing import Dict, List, Optional, Tuple, Union

logger = logging.getLogger("duet")

TAG_PREFIX = "<np-"
_NAME_CHARS = frozenset(string.ascii_letters + string.digits + "_-")
_ATTR_PATTERN = re.compile(r'(\w+)="([^"]*)"')
_LINE_PATTERN = re.compile(r"\s*[-+]?[0-9]{1,18}\s*")


# =============================================================================
# Operations
# =============================================================================

@dataclasses.dataclass(frozen=True)
class ReplaceAll:
    content: str


@dataclasses.dataclass(frozen=True)
class Append:
    content: str


@dataclasses.dataclass(frozen=True)
class Prepend:
    content: str


@dataclasses.dataclass(frozen=True)
class InsertAfterLine:
    line: int
    content: str


@dataclasses.dataclass(frozen=True)
class ReplaceLine:
    line: int
    content: str


@dataclasses.dataclass(frozen=True)
class DeleteLine:
    line: int


@dataclasses.dataclass(frozen=True)
class SearchReplace:
    find: str
    with_: str
    all: bool = False


PatchOperation = Union[
    ReplaceAll, Append, Prepend, InsertAfterLine, ReplaceLine, DeleteLine, SearchReplace
]


@dataclasses.dataclass(frozen=True)
class ParsedResponse:
    spoken: str
    operations: List[PatchOperation]


# =============================================================================
# Scanner
# =============================================================================

@dataclasses.dataclass(frozen=True)
class _Tag:
    name: str
    attrs: Dict[str, str]
    content: str
    start: int
    end: int


def _find_prefix(text: str, pos: int) -> int:
    """Index of the next `<np-` (any case) at or after pos, or -1."""
    while True:
        at = text.find("<", pos)
        if at < 0:
            return -1
        if text[at:at + len(TAG_PREFIX)].lower() == TAG_PREFIX:
            return at
        pos = at + 1


def _find_close(text: str, close: str, pos: int) -> int:
    while True:
        at = text.find("</", pos)
        if at < 0:
            return -1
        if text[at:at + len(close)].lower() == close:
            return at
        pos = at + 2


def _parse_attrs(attr_text: str) -> Dict[str, str]:
    return {key: value for key, value in _ATTR_PATTERN.findall(attr_text)}


def _scan_tag(text: str, start: int) -> Optional[_Tag]:
    """Read one tag construct starting at `start`. None if it is malformed."""
    n = len(text)
    i = start + len(TAG_PREFIX)
    name_start = i
    while i < n and text[i] in _NAME_CHARS:
        i += 1
    if i == name_start:
        return None
    name = text[name_start:i].lower()

    # Attribute substring runs to the first '>' outside a quoted value
    attr_start = i
    in_quote = False
    while i < n:
        ch = text[i]
        if ch == '"':
            in_quote = not in_quote
        elif ch == ">" and not in_quote:
            break
        i += 1
    else:
        return None
    attr_text = text[attr_start:i]
    head_end = i + 1

    if attr_text.endswith("/"):
        return _Tag(name, _parse_attrs(attr_text[:-1]), "", start, head_end)

    close = f"</np-{name}>"
    close_at = _find_close(text, close, head_end)
    if close_at < 0:
        return None
    return _Tag(
        name,
        _parse_attrs(attr_text),
        text[head_end:close_at],
        start,
        close_at + len(close),
    )


def _scan(text: str) -> Tuple[List[_Tag], str]:
    """Split text into well-formed tags and the residual text around them."""
    tags: List[_Tag] = []
    residual: List[str] = []
    copied = 0
    pos = 0
    while True:
        at = _find_prefix(text, pos)
        if at < 0:
            break
        tag = _scan_tag(text, at)
        if tag is None:
            pos = at + 1
            continue
        residual.append(text[copied:at])
        tags.append(tag)
        copied = pos = tag.end
    residual.append(text[copied:])
    return tags, "".join(residual)


# =============================================================================
# Parsing
# =============================================================================

def _parse_line(value: Optional[str]) -> Optional[int]:
    if value is None or not _LINE_PATTERN.fullmatch(value):
        return None
    return int(value)


def _to_operation(tag: _Tag) -> Optional[PatchOperation]:
    if tag.name == "replace-all":
        return ReplaceAll(tag.content)
    if tag.name == "append":
        return Append(tag.content)
    if tag.name == "prepend":
        return Prepend(tag.content)

    if tag.name in ("insert", "replace", "delete"):
        line = _parse_line(tag.attrs.get("line"))
        if line is None:
            logger.debug(f"Dropping np-{tag.name}: missing or non-numeric line attribute")
            return None
        if tag.name == "insert":
            return InsertAfterLine(line, tag.content)
        if tag.name == "replace":
            return ReplaceLine(line, tag.content)
        return DeleteLine(line)

    if tag.name == "search-replace":
        find = tag.attrs.get("find")
        replacement = tag.attrs.get("with")
        if not find or replacement is None:
            logger.debug("Dropping np-search-replace: 'find' and 'with' are required")
            return None
        return SearchReplace(find, replacement, tag.attrs.get("all", "").lower() == "true")

    logger.debug(f"Ignoring unknown notepad tag np-{tag.name}")
    return None


def parse_response(raw: str) -> ParsedResponse:
    """Split a model reply into spoken text and notepad operations."""
    tags, residual = _scan(raw)
    operations = []
    for tag in tags:
        op = _to_operation(tag)
        if op is not None:
            operations.append(op)
    return ParsedResponse(spoken=residual.strip(), operations=operations)


# =============================================================================
# Interpreter
# =============================================================================

def _apply_one(document: str, op: PatchOperation) -> str:
    if isinstance(op, ReplaceAll):
        return op.content
    if isinstance(op, Append):
        return document + ("\n" if document else "") + op.content
    if isinstance(op, Prepend):
        return op.content + ("\n" if document else "") + document
    if isinstance(op, SearchReplace):
        if not op.find:
            return document
        return document.replace(op.find, op.with_, -1 if op.all else 1)

    lines = document.split("\n")
    if isinstance(op, InsertAfterLine):
        lines.insert(max(0, min(len(lines), op.line)), op.content)
        return "\n".join(lines)
    if isinstance(op, ReplaceLine):
        if not 1 <= op.line <= len(lines):
            return document
        lines[op.line - 1] = op.content
        return "\n".join(lines)
    if isinstance(op, DeleteLine):
        if not 1 <= op.line <= len(lines):
            return document
        del lines[op.line - 1]
        return "\n".join(lines)

    logger.warning(f"Skipping unsupported notepad operation: {op!r}")
    return document


def apply_patches(document: str, operations: List[PatchOperation]) -> str:
    """Apply operations in order, each against the result of the previous one."""
    for op in operations:
        try:
            document = _apply_one(document, op)
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping notepad operation {op!r}: {e}")
    return document
