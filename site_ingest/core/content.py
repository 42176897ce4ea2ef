import re
import logging
from typing import List, Optional
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup
from pydantic import BaseModel
from readability import Document as ReadabilityDocument
from readability.readability import Unparseable

from site_ingest.config import settings

logger = logging.getLogger(__name__)

STRIP_TAGS = [
    "script", "style", "noscript", "template", "svg", "canvas", "iframe",
    "form", "button", "nav", "footer", "header", "aside",
]
BLOCK_TAGS = [
    "p", "div", "section", "article", "main", "blockquote", "pre", "table",
    "tr", "ul", "ol", "dl", "dt", "dd", "figure", "figcaption", "li", "hr",
]
HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6"]

_WORD_PATTERN = re.compile(r"\w+(?:['’-]\w+)*")
_INLINE_WHITESPACE = re.compile(r"[ \t\r\f\v\u00a0]+")


class ExtractedContent(BaseModel):
    title: Optional[str] = None
    content: str
    word_count: int


def count_words(text: str) -> int:
    if not text:
        return 0
    return len(_WORD_PATTERN.findall(text))


def normalize_whitespace(text: str) -> str:
    """
    Collapses runs of spaces inside lines and limits blank lines to one,
    keeping paragraph breaks intact.
    """
    lines = [_INLINE_WHITESPACE.sub(" ", line).strip() for line in text.split("\n")]
    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def html_to_text(html_content: str) -> str:
    """
    Converts HTML into lightly formatted plain text: headings become
    ``#``-prefixed lines, list items become ``- `` lines and block elements
    are separated by blank lines.
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, "html.parser")

    for tag in soup(STRIP_TAGS):
        tag.decompose()

    for heading in soup.find_all(HEADING_TAGS):
        level = int(heading.name[1])
        text = heading.get_text(" ", strip=True)
        heading.replace_with(f"\n\n{'#' * level} {text}\n\n" if text else "")

    for br in soup.find_all("br"):
        br.replace_with("\n")

    for cell in soup.find_all(["td", "th"]):
        cell.insert_after(" ")

    for item in soup.find_all("li"):
        item.insert(0, "- ")

    for block in soup.find_all(BLOCK_TAGS):
        block.insert_before("\n\n")
        block.insert_after("\n\n")

    return normalize_whitespace(soup.get_text())


def extract_title(html_content: str) -> Optional[str]:
    soup = BeautifulSoup(html_content, "html.parser")
    if soup.title and soup.title.string:
        title = soup.title.string.strip()
        if title:
            return title
    heading = soup.find("h1")
    if heading:
        text = heading.get_text(" ", strip=True)
        return text or None
    return None


def extract_content(
    html_content: str,
    url: Optional[str] = None,
    min_words: int = settings.CRAWL_MIN_CONTENT_WORDS,
) -> Optional[ExtractedContent]:
    """
    Extracts the main readable content of a page.

    Readability isolates the article body; when it fails or keeps too little
    text, the whole <body> is converted instead. Returns None if the page
    still has fewer than ``min_words`` words.
    """
    if not html_content or not html_content.strip():
        return None

    title = extract_title(html_content)
    text = ""
    try:
        doc = ReadabilityDocument(html_content)
        text = html_to_text(doc.summary(html_partial=True))
        if not title:
            title = doc.short_title() or None
    except Unparseable as e:
        logger.debug(f"Readability could not parse {url or 'page'}: {e}")

    if count_words(text) < min_words:
        body_text = html_to_text(html_content)
        if count_words(body_text) > count_words(text):
            text = body_text

    word_count = count_words(text)
    if word_count < min_words:
        logger.debug(f"Too little content on {url or 'page'} ({word_count} words)")
        return None

    return ExtractedContent(title=title, content=text, word_count=word_count)


def discover_links(html_content: str, page_url: str) -> List[str]:
    """
    Returns absolute http(s) links found in <a href> in document order,
    without fragments and without duplicates.
    """
    soup = BeautifulSoup(html_content, "html.parser")
    links: List[str] = []
    seen = set()
    for a_tag in soup.find_all("a", href=True):
        href = a_tag["href"].strip()
        if not href or href.startswith(("#", "mailto:", "tel:", "javascript:", "data:")):
            continue
        try:
            absolute = urljoin(page_url, href)
            parts = urlsplit(absolute)
        except ValueError:
            continue
        if parts.scheme not in ("http", "https"):
            continue
        absolute = parts._replace(fragment="").geturl()
        if absolute not in seen:
            seen.add(absolute)
            links.append(absolute)
    return links
