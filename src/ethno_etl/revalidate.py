"""ethno_etl.revalidate

Cache invalidation callback for the public site after a successful load.

  POST {site_url}/api/admin/revalidate
  Authorization: Bearer <secret>
  {"tags": [...]}

The secret and site URL come from the environment only.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any

import requests

log = logging.getLogger(__name__)

DEFAULT_SITE_URL = "http://localhost:3000"
DEFAULT_SITE_URL_ENV = "SITE_URL"
DEFAULT_SECRET_ENV = "REVALIDATE_SECRET"
REVALIDATE_PATH = "/api/admin/revalidate"
CACHE_TAGS = ["regions", "countries", "ethnicities", "population", "africa"]


@dataclass
class RevalidateResult:
    attempted: bool = False
    ok: bool = False
    status_code: int | None = None
    invalidated_tags: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempted": self.attempted,
            "ok": self.ok,
            "status_code": self.status_code,
            "invalidated_tags": list(self.invalidated_tags),
            "error": self.error,
        }


def normalize_site_url(url: str | None) -> str:
    """Default to localhost, add http:// when no scheme, drop a trailing slash."""
    url = (url or "").strip() or DEFAULT_SITE_URL
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"
    return url.rstrip("/")


def revalidate_cache(
    site_url: str | None,
    secret: str | None,
    tags: list[str] | None = None,
    session: requests.Session | None = None,
    timeout: int = 30,
) -> RevalidateResult:
    """POST the invalidation request; never raises on HTTP or network failure."""
    result = RevalidateResult()
    if not secret:
        result.error = "revalidate secret not set"
        log.warning("Revalidate secret not set; cache will not be invalidated")
        return result

    tags = tags if tags is not None else list(CACHE_TAGS)
    endpoint = normalize_site_url(site_url) + REVALIDATE_PATH
    http = session or requests.Session()
    result.attempted = True
    log.info("Invalidating cache at %s", endpoint)
    try:
        resp = http.post(
            endpoint,
            json={"tags": tags},
            headers={"Authorization": f"Bearer {secret}"},
            timeout=timeout,
        )
    except requests.RequestException as exc:
        result.error = str(exc)
        log.warning("Cache invalidation failed: %s", exc)
        return result

    result.status_code = resp.status_code
    if not resp.ok:
        result.error = f"HTTP {resp.status_code}: {resp.text[:200]}"
        log.warning("Cache invalidation failed: %s", result.error)
        return result

    result.ok = True
    try:
        body = resp.json()
    except ValueError:
        body = {}
    result.invalidated_tags = list((body or {}).get("invalidatedTags") or tags)
    log.info("Cache invalidated: %s", ", ".join(result.invalidated_tags))
    return result


def revalidate_from_env(
    site_url_env: str = DEFAULT_SITE_URL_ENV,
    secret_env: str = DEFAULT_SECRET_ENV,
    session: requests.Session | None = None,
) -> RevalidateResult:
    return revalidate_cache(
        os.environ.get(site_url_env),
        os.environ.get(secret_env),
        session=session,
    )
