import pytest

from errors import InvalidFeedError
from fetcher import FeedFetcher, format_timestamp

RSS_SAMPLE = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:dc="http://purl.org/dc/elements/1.1/"
     xmlns:content="http://purl.org/rss/1.0/modules/content/">
  <channel>
    <title>Example News</title>
    <link>https://example.com/</link>
    <description>All the news that fits</description>
    <item>
      <title>First post</title>
      <link>https://example.com/posts/1</link>
      <description>Short summary</description>
      <content:encoded><![CDATA[<p>Full <b>body</b></p>]]></content:encoded>
      <dc:creator>Jane Doe</dc:creator>
      <pubDate>Mon, 17 Nov 2025 08:30:00 +0100</pubDate>
    </item>
    <item>
      <title>Second post</title>
      <link>https://example.com/posts/2</link>
      <description>Only a summary here</description>
    </item>
  </channel>
</rss>
"""

ATOM_SAMPLE = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom Example</title>
  <subtitle>Updates from the lab</subtitle>
  <id>urn:uuid:60a76c80-d399-11d9-b93C-0003939e0af6</id>
  <updated>2025-11-15T16:00:00Z</updated>
  <entry>
    <title>Atom entry</title>
    <link href="https://example.org/entries/1"/>
    <id>urn:uuid:1225c695-cfb8-4ebb-aaaa-80da344efa6a</id>
    <updated>2025-11-15T16:00:00Z</updated>
    <author><name>Ada</name></author>
    <summary>Entry summary</summary>
    <content type="html">&lt;p&gt;Entry body&lt;/p&gt;</content>
  </entry>
</feed>
"""

EMPTY_CHANNEL = b"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>Quiet</title></channel></rss>
"""


@pytest.fixture
def fetcher():
    return FeedFetcher(client=None)


def test_rss_feed_is_normalized(fetcher):
    feed = fetcher.normalize_feed(RSS_SAMPLE, "https://example.com/rss")

    assert feed.title == "Example News"
    assert feed.description == "All the news that fits"
    assert [item.title for item in feed.items] == ["First post", "Second post"]

    first = feed.items[0]
    assert first.link == "https://example.com/posts/1"
    assert first.content_snippet == "Short summary"
    assert "Full <b>body</b>" in first.content
    assert first.creator == "Jane Doe"
    assert first.author == "Jane Doe"
    assert first.pub_date == "2025-11-17T07:30:00Z"


def test_summary_only_entry_reuses_snippet_as_content(fetcher):
    feed = fetcher.normalize_feed(RSS_SAMPLE)
    second = feed.items[1]

    assert second.content == second.content_snippet == "Only a summary here"
    assert second.pub_date is None
    assert second.author is None


def test_atom_feed_is_normalized(fetcher):
    feed = fetcher.normalize_feed(ATOM_SAMPLE, "https://example.org/atom")

    assert feed.title == "Atom Example"
    assert feed.description == "Updates from the lab"
    assert len(feed.items) == 1

    entry = feed.items[0]
    assert entry.title == "Atom entry"
    assert entry.link == "https://example.org/entries/1"
    assert entry.content_snippet == "Entry summary"
    assert entry.content == "<p>Entry body</p>"
    assert entry.creator == entry.author == "Ada"
    assert entry.pub_date == "2025-11-15T16:00:00Z"


def test_feed_without_entries_is_valid(fetcher):
    feed = fetcher.normalize_feed(EMPTY_CHANNEL)

    assert feed.title == "Quiet"
    assert feed.items == ()
    assert feed.to_dict() == {"title": "Quiet", "items": []}


def test_empty_body_is_invalid_feed(fetcher):
    with pytest.raises(InvalidFeedError) as excinfo:
        fetcher.normalize_feed(b"")
    assert excinfo.value.message == "Invalid RSS feed format: Empty response from RSS feed"


def test_html_page_is_invalid_feed(fetcher):
    with pytest.raises(InvalidFeedError):
        fetcher.normalize_feed(b"<html><head><title>Hi</title></head><body><p>Not a feed</p></body></html>")


def test_body_is_never_treated_as_a_path(fetcher, tmp_path):
    local = tmp_path / "feed.xml"
    local.write_bytes(RSS_SAMPLE)

    with pytest.raises(InvalidFeedError):
        fetcher.normalize_feed(str(local).encode())


def test_item_serialization_uses_wire_names(fetcher):
    item = fetcher.normalize_feed(RSS_SAMPLE).items[0].to_dict()

    assert set(item) == {"title", "link", "contentSnippet", "content", "creator", "author", "pubDate"}


def test_format_timestamp_handles_missing_values():
    assert format_timestamp(None) is None
    assert format_timestamp((2025, 1, 2, 3, 4, 5, 0, 2, 0)) == "2025-01-02T03:04:05Z"


CONTENT_ONLY_RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/">
  <channel>
    <title>Bodies</title>
    <item>
      <title>No summary</title>
      <link>https://example.com/posts/3</link>
      <content:encoded><![CDATA[<p>Full body</p>]]></content:encoded>
    </item>
  </channel>
</rss>
"""

CONTENT_ONLY_ATOM = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom bodies</title>
  <id>urn:uuid:60a76c80-d399-11d9-b93C-0003939e0af7</id>
  <updated>2025-11-15T16:00:00Z</updated>
  <entry>
    <title>Body only</title>
    <link href="https://example.org/entries/2"/>
    <id>urn:uuid:1225c695-cfb8-4ebb-aaaa-80da344efa6b</id>
    <updated>2025-11-15T16:00:00Z</updated>
    <content type="text">Body only</content>
  </entry>
</feed>
"""


@pytest.mark.parametrize("document, body", [
    (CONTENT_ONLY_RSS, "<p>Full body</p>"),
    (CONTENT_ONLY_ATOM, "Body only"),
])
def test_content_only_entry_has_no_snippet(fetcher, document, body):
    item = fetcher.normalize_feed(document).items[0]

    assert item.content == body
    assert item.content_snippet is None
    assert "contentSnippet" not in item.to_dict()


def test_author_is_first_listed_name_only(fetcher):
    entry = {
        "title": "Mailbox",
        "authors": [{"email": "editor@example.com"}, {"name": "Second Author"}],
        "author": "editor@example.com",
    }

    item = fetcher.normalize_entry(entry)

    assert item.author is None
    assert item.creator is None
