from __future__ import annotations

import logging
import re
from typing import List, Optional

from schemas.extraction import RawChunk

logger = logging.getLogger(__name__)

PAGE_MARKER = re.compile(r"=== PDF PAGES? (\d+(?:-\d+)?) ===", re.IGNORECASE)
FALLBACK_PAGE_RANGE = "1-N"


def single_chunk(statement_text: Optional[str]) -> RawChunk:
    return RawChunk(content=statement_text or "", page_range=FALLBACK_PAGE_RANGE, sequence_number=1)


def split_into_chunks(statement_text: Optional[str]) -> List[RawChunk]:
    """
    Split raw statement text on `=== PDF PAGE(S) <range> ===` markers.

    Each chunk holds the text between one marker and the next. Sequence numbers
    follow marker position, so an empty segment is dropped without renumbering
    the chunks after it. Text without markers comes back as a single chunk.
    """
    text = statement_text or ""
    markers = list(PAGE_MARKER.finditer(text))
    if not markers:
        logger.info("No page markers found, treating statement as a single chunk")
        return [single_chunk(text)]

    chunks: List[RawChunk] = []
    for index, marker in enumerate(markers):
        end = markers[index + 1].start() if index + 1 < len(markers) else len(text)
        content = text[marker.end():end].strip()
        if not content:
            logger.debug(f"Dropping empty segment for pages {marker.group(1)}")
            continue
        chunks.append(
            RawChunk(content=content, page_range=marker.group(1).strip(), sequence_number=index + 1)
        )

    logger.info(f"Split statement into {len(chunks)} chunks")
    for chunk in chunks:
        logger.debug(
            f"Chunk {chunk.sequence_number}: pages {chunk.page_range}, {len(chunk.content)} characters"
        )
    return chunks
