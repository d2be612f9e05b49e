"""
Parser for the tagged block protocol spoken by the language model.

The model answers with blocks of the form ``[KIND_FORMAT]payload[/END]``
where KIND is one of TEXT, VOICE, IMAGE, JSON or CONFIRMATION. Blocks may
repeat and may be interleaved with prose, which is ignored. Output with no
recognized block at all is repaired into a single implicit TEXT block.

The parser is pure: no I/O, no logging side effects beyond a debug line.

Usage:
    parsed = parse_tagged_response("[TEXT_FORMAT]Olá![/END][IMAGE_FORMAT]menu[/END]")
    assert parsed.text == "Olá!"
    assert parsed.image_ids == ("menu",)
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

BLOCK_KINDS = ("TEXT", "VOICE", "IMAGE", "JSON", "CONFIRMATION")
INFO_REQUEST_KINDS = ("HISTORY", "MENU", "PAYMENT")

_BLOCK_RES = {
    kind: re.compile(rf"\[{kind}_FORMAT\]([\s\S]*?)\[/END\]") for kind in BLOCK_KINDS
}
_OPEN_TAG_RE = re.compile(r"\[(?:TEXT|VOICE|IMAGE|JSON|CONFIRMATION)_FORMAT\]")
_DANGLING_TAG_RE = re.compile(r"\[(?:TEXT|VOICE|IMAGE|JSON|CONFIRMATION)_FORMAT\]|\[/END\]")
_INFO_REQUEST_RE = re.compile(r"\[[/\\]?REQUEST_(HISTORY|MENU|PAYMENT)\]")


@dataclass(frozen=True)
class ParsedResponse:
    """Structured view of one model reply."""

    text: Optional[str] = None
    voice_text: Optional[str] = None
    image_ids: tuple[str, ...] = ()
    json_text: Optional[str] = None
    confirmation_text: Optional[str] = None
    info_requests: frozenset[str] = frozenset()
    repaired: bool = field(default=False, compare=False)

    @property
    def has_confirmation(self) -> bool:
        return self.confirmation_text is not None

    @property
    def kinds(self) -> set[str]:
        """Block kinds present in this response."""
        present = set()
        if self.text is not None:
            present.add("TEXT")
        if self.voice_text is not None:
            present.add("VOICE")
        if self.image_ids:
            present.add("IMAGE")
        if self.json_text is not None:
            present.add("JSON")
        if self.confirmation_text is not None:
            present.add("CONFIRMATION")
        return present


def strip_info_requests(raw: str) -> tuple[str, frozenset[str]]:
    """Remove ``[REQUEST_*]`` markers, returning the cleaned text and the kinds found."""
    kinds = frozenset(match.group(1) for match in _INFO_REQUEST_RE.finditer(raw))
    if not kinds:
        return raw, kinds
    return _INFO_REQUEST_RE.sub("", raw).strip(), kinds


def _block_bodies(kind: str, text: str) -> list[str]:
    """
    Bodies of every ``kind`` block in document order.

    A body is cut at the first opening tag it contains, so a block whose
    ``[/END]`` was forgotten does not swallow the block after it.
    """
    bodies = []
    for match in _BLOCK_RES[kind].finditer(text):
        body = _OPEN_TAG_RE.split(match.group(1), maxsplit=1)[0]
        bodies.append(body.strip())
    return bodies


def parse_tagged_response(raw: Optional[str]) -> ParsedResponse:
    """
    Parse model output into its blocks.

    TEXT bodies are concatenated in order. IMAGE bodies are all kept in
    document order. VOICE, JSON and CONFIRMATION keep their first block.

    Args:
        raw: The model output.

    Returns:
        The parsed response. Never raises on malformed input.
    """
    cleaned, info_requests = strip_info_requests(raw or "")

    bodies = {kind: _block_bodies(kind, cleaned) for kind in BLOCK_KINDS}
    found_block = any(bodies.values())

    texts = [body for body in bodies["TEXT"] if body]
    images = [body for body in bodies["IMAGE"] if body]
    first = {kind: found[0] for kind, found in bodies.items() if found}

    if not found_block:
        implicit = _DANGLING_TAG_RE.sub("", cleaned).strip()
        if implicit:
            logger.debug("No tagged blocks found, treating reply as TEXT")
        return ParsedResponse(
            text=implicit or None,
            info_requests=info_requests,
            repaired=bool(implicit),
        )

    return ParsedResponse(
        text="\n\n".join(texts) if texts else None,
        voice_text=first.get("VOICE") or None,
        image_ids=tuple(images),
        json_text=first.get("JSON") or None,
        # an empty CONFIRMATION block still counts as present
        confirmation_text=first.get("CONFIRMATION"),
        info_requests=info_requests,
    )


def serialize_blocks(parsed: ParsedResponse) -> str:
    """Render a parsed response back into the tagged wire format."""
    parts = []
    if parsed.text is not None:
        parts.append(f"[TEXT_FORMAT]{parsed.text}[/END]")
    if parsed.voice_text is not None:
        parts.append(f"[VOICE_FORMAT]{parsed.voice_text}[/END]")
    for image_id in parsed.image_ids:
        parts.append(f"[IMAGE_FORMAT]{image_id}[/END]")
    if parsed.json_text is not None:
        parts.append(f"[JSON_FORMAT]{parsed.json_text}[/END]")
    if parsed.confirmation_text is not None:
        parts.append(f"[CONFIRMATION_FORMAT]{parsed.confirmation_text}[/END]")
    for kind in sorted(parsed.info_requests):
        parts.append(f"[REQUEST_{kind}]")
    return "\n".join(parts)
