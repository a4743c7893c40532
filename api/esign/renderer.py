import logging

import requests

from .config import Settings
from .errors import RenderError
from .stamping import render_html

logger = logging.getLogger(__name__)


class LocalRenderer:
    kind = "local"

    def render(self, html: str, timeout: float) -> bytes:
        try:
            return render_html(html)
        except (ValueError, OSError) as exc:
            # malformed input will not render on a second try either
            raise RenderError(f"local render failed: {exc}", retryable=False) from exc


class HttpRenderer:
    """Posts HTML to an external rendering service and returns the PDF body."""

    kind = "http"

    def __init__(self, url: str, session: requests.Session = None):
        self.url = url
        self._http = session or requests.Session()

    def render(self, html: str, timeout: float) -> bytes:
        try:
            resp = self._http.post(self.url, json={"html": html}, timeout=timeout)
        except requests.Timeout as exc:
            raise RenderError("renderer timed out", retryable=True) from exc
        except requests.ConnectionError as exc:
            raise RenderError(f"renderer unreachable: {exc}", retryable=True) from exc
        except requests.RequestException as exc:
            raise RenderError(f"renderer request failed: {type(exc).__name__}: {exc}", retryable=True) from exc
        if resp.status_code >= 500:
            raise RenderError(f"renderer returned {resp.status_code}", retryable=True)
        if resp.status_code >= 400:
            raise RenderError(f"renderer rejected input with {resp.status_code}", retryable=False)
        if not resp.content:
            raise RenderError("renderer returned an empty body", retryable=True)
        return resp.content


def build_renderer(settings: Settings):
    if settings.renderer == "local":
        return LocalRenderer()
    if settings.renderer == "http":
        return HttpRenderer(settings.renderer_url)
    raise ValueError(f"unknown renderer: {settings.renderer}")
