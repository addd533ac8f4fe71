"""Unit tests for ethno_etl.revalidate."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from ethno_etl.revalidate import (
    CACHE_TAGS,
    normalize_site_url,
    revalidate_cache,
    revalidate_from_env,
)


def _session(status: int = 200, body=None, exc: Exception | None = None) -> MagicMock:
    session = MagicMock(spec=requests.Session)
    if exc is not None:
        session.post.side_effect = exc
        return session
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 400
    resp.text = "boom" if status >= 400 else ""
    if body is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = body
    session.post.return_value = resp
    return session


class TestNormalizeSiteUrl:
    @pytest.mark.parametrize("raw,expected", [
        (None, "http://localhost:3000"),
        ("", "http://localhost:3000"),
        ("example.org", "http://example.org"),
        ("https://example.org/", "https://example.org"),
    ])
    def test_values(self, raw, expected):
        assert normalize_site_url(raw) == expected


class TestRevalidateCache:
    def test_posts_tags_with_bearer_token(self):
        session = _session(body={"invalidatedTags": ["regions"]})
        result = revalidate_cache("https://site.example", "s3cret", session=session)

        session.post.assert_called_once()
        args, kwargs = session.post.call_args
        assert args[0] == "https://site.example/api/admin/revalidate"
        assert kwargs["json"] == {"tags": CACHE_TAGS}
        assert kwargs["headers"] == {"Authorization": "Bearer s3cret"}
        assert result.attempted and result.ok
        assert result.status_code == 200
        assert result.invalidated_tags == ["regions"]

    def test_body_without_tags_falls_back_to_request(self):
        result = revalidate_cache(None, "s3cret", tags=["africa"], session=_session(body=None))
        assert result.ok
        assert result.invalidated_tags == ["africa"]

    def test_missing_secret_skips_request(self):
        session = _session()
        result = revalidate_cache("https://site.example", None, session=session)
        session.post.assert_not_called()
        assert not result.attempted
        assert result.error

    def test_http_error(self):
        result = revalidate_cache(None, "s3cret", session=_session(status=401))
        assert result.attempted
        assert not result.ok
        assert result.status_code == 401
        assert result.error.startswith("HTTP 401")

    def test_network_error(self):
        session = _session(exc=requests.ConnectionError("refused"))
        result = revalidate_cache(None, "s3cret", session=session)
        assert not result.ok
        assert "refused" in result.error


class TestRevalidateFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("SITE_URL", "https://env.example")
        monkeypatch.setenv("REVALIDATE_SECRET", "from-env")
        session = _session(body={})
        result = revalidate_from_env(session=session)
        assert result.ok
        args, kwargs = session.post.call_args
        assert args[0].startswith("https://env.example")
        assert kwargs["headers"]["Authorization"] == "Bearer from-env"

    def test_custom_variable_names(self, monkeypatch):
        monkeypatch.delenv("REVALIDATE_SECRET", raising=False)
        monkeypatch.setenv("MY_SECRET", "x")
        result = revalidate_from_env(secret_env="MY_SECRET", session=_session(body={}))
        assert result.ok
