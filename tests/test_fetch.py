from __future__ import annotations

import types
from pathlib import Path

import pytest
import requests

from featspec_common.fetch import FetchError, FetchHttpError, TextFetcher, fetch_first


class DummySession:
    def __init__(self, responses):
        self.responses = responses
        self.urls = []

    def get(self, url, headers=None, timeout=None):
        self.urls.append(url)
        resp = self.responses.get(url)
        if isinstance(resp, Exception):
            raise resp
        if resp is None:
            return types.SimpleNamespace(status_code=404, text="not found")
        return types.SimpleNamespace(status_code=200, text=resp)


def test_locate_url_root():
    fetcher = TextFetcher("http://host/app")
    assert fetcher.locate("reference/x.md") == "http://host/app/reference/x.md"
    assert fetcher.locate("./reference/x.md") == "http://host/app/reference/x.md"
    assert fetcher.locate("/reference/x.md") == "http://host/app/reference/x.md"
    assert fetcher.locate("../feat-spec/x.md") == "http://host/feat-spec/x.md"


def test_fetch_reads_local_files(tmp_path: Path):
    (tmp_path / "reference").mkdir()
    (tmp_path / "reference" / "a.md").write_text("hello", encoding="utf-8")
    fetcher = TextFetcher(tmp_path)
    assert fetcher.fetch("reference/a.md") == "hello"
    assert fetcher.fetch("/reference/a.md") == "hello"
    with pytest.raises(FetchError):
        fetcher.fetch("reference/missing.md")


def test_fetch_http_status_and_transport_errors():
    session = DummySession(
        {
            "http://host/ok.md": "body",
            "http://host/boom.md": requests.ConnectionError("refused"),
        }
    )
    fetcher = TextFetcher("http://host", session=session)
    assert fetcher.fetch("ok.md") == "body"
    with pytest.raises(FetchHttpError) as exc_info:
        fetcher.fetch("gone.md")
    assert exc_info.value.status_code == 404
    with pytest.raises(FetchError):
        fetcher.fetch("boom.md")


def test_fetch_first_tries_candidates_in_order(tmp_path: Path):
    session = DummySession({"http://host/b/x.md": "second"})
    fetcher = TextFetcher("http://host", session=session)

    assert fetch_first(fetcher, "x.md", ("a/", "b/", "c/")) == "second"
    assert session.urls == ["http://host/a/x.md", "http://host/b/x.md"]


def test_fetch_first_all_candidates_fail_returns_none(caplog: pytest.LogCaptureFixture):
    session = DummySession({})
    fetcher = TextFetcher("http://host", session=session)

    assert fetch_first(fetcher, "x.md", ("a/", "./a/", "../b/", "/c/")) is None
    assert len(session.urls) == 4
    assert "Could not load x.md" in caplog.text
