#!/usr/bin/env python3
"""
Canonical response models for the fetch proxy.

Whatever shape the upstream feed or page has, callers receive these
structures. They are request-scoped immutable values; to_dict() renders the
wire format, omitting optional fields that are absent rather than emitting
nulls.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


def _compact(values: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys whose value is None."""
    return {key: value for key, value in values.items() if value is not None}


@dataclass(frozen=True)
class NormalizedItem:
    """One feed entry. Every field may independently be absent."""

    title: Optional[str] = None
    link: Optional[str] = None
    content_snippet: Optional[str] = None
    content: Optional[str] = None
    creator: Optional[str] = None
    author: Optional[str] = None
    pub_date: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact({
            "title": self.title,
            "link": self.link,
            "contentSnippet": self.content_snippet,
            "content": self.content,
            "creator": self.creator,
            "author": self.author,
            "pubDate": self.pub_date,
        })


@dataclass(frozen=True)
class NormalizedFeed:
    """A parsed RSS/Atom document; items keep the source order."""

    title: Optional[str] = None
    description: Optional[str] = None
    items: Tuple[NormalizedItem, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        data = _compact({
            "title": self.title,
            "description": self.description,
        })
        data["items"] = [item.to_dict() for item in self.items]
        return data


@dataclass(frozen=True)
class ExtractedArticle:
    """Main article content of a web page.

    tokens_used is derived from text (see extractor.estimate_tokens).
    """

    title: str
    url: str
    html: str
    text: str
    tokens_used: int
    published_time: Optional[str] = None
    author: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact({
            "title": self.title,
            "url": self.url,
            "html": self.html,
            "text": self.text,
            "publishedTime": self.published_time,
            "author": self.author,
            "tokensUsed": self.tokens_used,
        })


def success_envelope(data: Any) -> Dict[str, Any]:
    """Wrap a rendered model in the success envelope."""
    return {"success": True, "data": data.to_dict()}
