import logging
from typing import List, NamedTuple

import fitz  # PyMuPDF

logger = logging.getLogger(__name__)

# a vertical gap wider than this share of the line height reads as a blank line
BLANK_LINE_GAP = 0.8


class TextFragment(NamedTuple):
    text: str
    eol: bool = False


def page_fragments(data: bytes) -> List[List[TextFragment]]:
    """
    Text of every page as fragments carrying an end-of-line flag.

    Each span is a fragment and the last span of a text line ends the line.
    PyMuPDF's own block grouping is ignored; an empty end-of-line fragment is
    emitted only where the page leaves visible vertical space between two
    lines, which is what a blank line looks like in the text layer.
    """
    pages: List[List[TextFragment]] = []
    with fitz.open(stream=data, filetype="pdf") as doc:
        for page in doc:
            fragments: List[TextFragment] = []
            previous = None
            layout = page.get_text("dict")
            for block in layout.get("blocks", []):
                if block.get("type", 0) != 0:
                    continue
                for line in block.get("lines", []):
                    spans = [s.get("text", "") for s in line.get("spans", [])]
                    if not any(t.strip() for t in spans):
                        continue
                    x0, y0, x1, y1 = line["bbox"]
                    if previous is not None:
                        height = max(y1 - y0, previous[1] - previous[0])
                        if y0 - previous[1] > height * BLANK_LINE_GAP:
                            fragments.append(TextFragment("", True))
                    previous = (y0, y1)
                    for i, text in enumerate(spans):
                        fragments.append(TextFragment(text, i == len(spans) - 1))
            pages.append(fragments)
    logger.debug(f"Read {len(pages)} PDF pages")
    return pages


def fragments_to_lines(fragments: List[TextFragment]) -> List[str]:
    lines: List[str] = []
    current = []
    for fragment in fragments:
        current.append(fragment.text)
        if fragment.eol:
            lines.append("".join(current))
            current = []
    if current:
        lines.append("".join(current))
    return lines
