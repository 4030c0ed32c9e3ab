"""Shared fixtures: a fake web for feeds and downloads, and config helpers."""

from xml.sax.saxutils import escape, quoteattr

import pytest
import requests

import mvwdl

DEFAULT_ENCLOSURE = "https://cdn.example.com/video.mp4"


def make_item(title, duration=None, enclosures=(DEFAULT_ENCLOSURE,)):
    parts = [f"<title>{escape(title)}</title>"]
    if duration is not None:
        parts.append(f"<duration>{escape(str(duration))}</duration>")
    for url in enclosures:
        parts.append(f"<enclosure url={quoteattr(url)} length=\"0\" type=\"video/mp4\"/>")
    return "<item>" + "".join(parts) + "</item>"


def make_feed(*items):
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0"><channel><title>MediathekViewWeb</title>'
        + "".join(items)
        + "</channel></rss>"
    ).encode("utf-8")


class FakeResponse:
    def __init__(self, content=b"", status_code=200, headers=None, chunks=()):
        self.content = content
        self.status_code = status_code
        self.headers = headers or {}
        self._chunks = list(chunks)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")

    def iter_content(self, chunk_size=8192):
        yield from self._chunks

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False


class FakeWeb:
    """Stands in for requests.get: serves feeds and files by URL."""

    def __init__(self):
        self.feeds = {}
        self.files = {}
        self.calls = []

    def add_feed(self, phrase, *items):
        self.feeds[mvwdl.build_query_url(phrase)] = make_feed(*items)

    def get(self, url, **kwargs):
        self.calls.append(url)
        if url in self.feeds:
            return FakeResponse(content=self.feeds[url])
        if url in self.files:
            payload = self.files[url]
            if isinstance(payload, Exception):
                raise payload
            return FakeResponse(chunks=[payload], headers={"content-length": str(len(payload))})
        raise requests.ConnectionError(f"no route to {url}")

    def file_calls(self):
        return [url for url in self.calls if url not in self.feeds]


@pytest.fixture(autouse=True)
def no_colors():
    mvwdl.Colors.disable()


@pytest.fixture
def web(monkeypatch):
    fake = FakeWeb()
    monkeypatch.setattr(mvwdl.requests, "get", fake.get)
    return fake


@pytest.fixture
def make_config(tmp_path):
    def factory(**overrides):
        values = dict(
            queries=["Tagesschau"],
            output_dir=str(tmp_path / "output"),
            history_file=str(tmp_path / "history"),
            parallel=2,
            retries=0,
            progress=False,
        )
        values.update(overrides)
        return mvwdl.Config(**values)

    return factory


@pytest.fixture
def make_context(make_config):
    def factory(**overrides):
        return mvwdl.create_context(make_config(**overrides))

    return factory
