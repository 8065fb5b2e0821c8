"""
Response post-processing for the support portal chat engine.

Handles citation extraction, source attribution and answer formatting for display.
"""
import re
from typing import Dict, List

from helpdesk.models import ContextBlock, Source


# Matches a bracket holding one or more KB tags:
# - "[KB-1]"
# - "[KB-1, KB-3]" / "[KB-1,KB-3]"
# - "[ KB-2 ]", "[kb-2]"
CITATION_BRACKET_PATTERN = re.compile(r'\[\s*(KB-\d+(?:\s*,\s*KB-\d+)*)\s*\]', re.IGNORECASE)
KB_NUMBER_PATTERN = re.compile(r'KB-(\d+)', re.IGNORECASE)
_SPACED_CITATION_PATTERN = re.compile(r'([ \t]*)' + CITATION_BRACKET_PATTERN.pattern, re.IGNORECASE)

# Matches: "## References", "##Sources", "References:", "**Sources**"
# (?:^|\n) requires heading at start of string or after newline (prevents mid-sentence matches)
REFERENCES_HEADING_PATTERN = (
    r'(?:^|\n)\s*(?:##\s*(?:References|Sources)|(?:References|Sources)\s*:|\*\*(?:References|Sources)\*\*)\s*:?\s*'
)


def strip_references_section(text: str) -> str:
    """
    Remove a trailing References/Sources section and everything after it.

    The sources are returned separately, so a model-written bibliography is noise.
    """
    return re.sub(
        REFERENCES_HEADING_PATTERN + r'.*$',
        '',
        text,
        flags=re.IGNORECASE | re.DOTALL
    ).rstrip()


def extract_answer_section(text: str) -> str:
    """Content before the references heading, if there is one."""
    match = re.search(REFERENCES_HEADING_PATTERN, text, re.IGNORECASE)
    if match:
        return text[:match.start()]
    return text


def extract_cited_numbers(text: str) -> List[int]:
    """
    Block numbers cited as [KB-n] in the answer section, in order of first appearance.
    """
    seen = set()
    numbers = []
    for bracket in CITATION_BRACKET_PATTERN.finditer(extract_answer_section(text)):
        for raw in KB_NUMBER_PATTERN.findall(bracket.group(1)):
            number = int(raw)
            if number not in seen:
                seen.add(number)
                numbers.append(number)
    return numbers


def cited_blocks(text: str, blocks: List[ContextBlock]) -> List[ContextBlock]:
    """
    Blocks the answer cites, in order of first citation.

    When the answer cites no known block, every block counts as a source.
    """
    by_number = {block.number: block for block in blocks}
    cited = [by_number[n] for n in extract_cited_numbers(text) if n in by_number]
    return cited if cited else list(blocks)


def renumber_citations(text: str, number_map: Dict[int, int]) -> str:
    """
    Rewrite [KB-n] tags to display numbers: [KB-3, KB-1] -> [1, 2].

    Tags for unknown blocks are dropped; a bracket left empty is removed.
    """
    def replace(match):
        numbers = []
        for raw in KB_NUMBER_PATTERN.findall(match.group(2)):
            display = number_map.get(int(raw))
            if display is not None and display not in numbers:
                numbers.append(display)
        if not numbers:
            # Drop the bracket with its leading spaces: "text [KB-9]." -> "text."
            return ''
        return match.group(1) + '[' + ', '.join(str(n) for n in numbers) + ']'

    return _SPACED_CITATION_PATTERN.sub(replace, text)


def render_for_display(text: str, sources: List[ContextBlock]) -> str:
    """
    Strip the references section and number citations by position in sources.
    """
    number_map = {block.number: position for position, block in enumerate(sources, 1)}
    return renumber_citations(strip_references_section(text), number_map).strip()


def format_source_links(sources: List[Source], limit: int = 3, base_path: str = "/articles") -> str:
    """Markdown footer linking the top sources, empty when there are none."""
    lines = []
    for source in sources[:limit]:
        if source.slug:
            lines.append(f"- [{source.title}]({base_path}/{source.slug})")
        else:
            lines.append(f"- {source.title}")
    if not lines:
        return ""
    return "\n\n**Related articles:**\n" + "\n".join(lines)
