from __future__ import annotations

from dataclasses import dataclass
import re

from bs4 import BeautifulSoup
import markdown

from newsletter_api.core.errors import ValidationError
from newsletter_api.domain.validation import (
    contains_forbidden_characters,
    is_empty_or_whitespace,
    is_too_long,
)


TITLE_MAX_LENGTH = 70
DESCRIPTION_MAX_LENGTH = 200

_SLUG_SEPARATORS = re.compile(r"[^\w]+", re.UNICODE)
_BLANK_LINES = re.compile(r"\n\s*\n")
_INLINE_SPACES = re.compile(r"[ \t]+")


def _check_length_and_characters(value: str, *, field: str, limit: int) -> None:
    if is_too_long(value, limit):
        raise ValidationError(f"{field} exceeds character limit.")
    if contains_forbidden_characters(value):
        raise ValidationError(f"{field} includes illegal characters.")


@dataclass(frozen=True)
class Title:
    value: str

    @classmethod
    def parse(cls, value: str) -> "Title":
        if is_empty_or_whitespace(value):
            raise ValidationError("A title is required.")
        _check_length_and_characters(value, field="Title", limit=TITLE_MAX_LENGTH)
        return cls(value)


@dataclass(frozen=True)
class Description:
    value: str

    @classmethod
    def parse(cls, value: str) -> "Description":
        if is_empty_or_whitespace(value):
            raise ValidationError("A description is required.")
        return cls.parse_draft(value)

    @classmethod
    def parse_draft(cls, value: str) -> "Description":
        # Drafts may leave the description empty until publish time.
        _check_length_and_characters(value, field="Description", limit=DESCRIPTION_MAX_LENGTH)
        return cls(value)


@dataclass(frozen=True)
class Content:
    value: str

    @classmethod
    def parse(cls, value: str) -> "Content":
        if is_empty_or_whitespace(value):
            raise ValidationError("Content body is required.")
        return cls(value)


def slugify(title: str) -> str:
    slug = _SLUG_SEPARATORS.sub("-", title.strip().lower()).strip("-_")
    if not slug:
        raise ValidationError("Title must contain at least one letter or digit.")
    return slug[:TITLE_MAX_LENGTH]


def render_html(content: str) -> str:
    return markdown.markdown(content)


def render_text(html_content: str) -> str:
    # Plain-text alternative for mail clients that do not render HTML.
    if not html_content:
        return ""
    soup = BeautifulSoup(html_content, "html.parser")
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for paragraph in soup.find_all("p"):
        paragraph.insert_after("\n\n")
    for header in soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"]):
        header.insert_before("\n")
        header.insert_after("\n")
    for item in soup.find_all("li"):
        item.insert_before("- ")
        item.insert_after("\n")
    for link in soup.find_all("a", href=True):
        link_text = link.get_text()
        href = link["href"]
        if href != link_text:
            link.replace_with(f"{link_text} ({href})")
    text = soup.get_text()
    text = _BLANK_LINES.sub("\n\n", text)
    text = _INLINE_SPACES.sub(" ", text)
    return text.strip()


@dataclass(frozen=True)
class RenderedIssue:
    subject: str
    html_content: str
    text_content: str


def render_issue(*, title: str, content: str) -> RenderedIssue:
    html_content = render_html(content)
    return RenderedIssue(
        subject=title,
        html_content=html_content,
        text_content=render_text(html_content),
    )
