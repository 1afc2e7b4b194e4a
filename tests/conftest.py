"""Shared pytest fixtures for comicgen tests.

No test talks to the real Gemini API: a fake client stands in for
``genai.Client`` and records every ``generate_content`` call so tests can
assert on exactly what would have been sent upstream.
"""

import io
import json
from types import SimpleNamespace
from typing import Any, Callable, List, Optional

import pytest
from PIL import Image

import comicgen
import server


def text_response(payload: Any) -> SimpleNamespace:
    """Script-model response whose ``.text`` is *payload* (JSON-encoded unless already text)."""
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return SimpleNamespace(text=text, candidates=[])


def image_response(data: bytes, mime_type: str = "image/png") -> SimpleNamespace:
    """Image-model response carrying one inline image part after a text part."""
    parts = [
        SimpleNamespace(text="Here is your panel.", inline_data=None),
        SimpleNamespace(text=None, inline_data=SimpleNamespace(data=data, mime_type=mime_type)),
    ]
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=parts))])


def no_image_response() -> SimpleNamespace:
    """Image-model response that only carries text (e.g. a refusal)."""
    parts = [SimpleNamespace(text="I can't draw that.", inline_data=None)]
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=parts))])


class FakeModels:
    """Stand-in for ``client.models``.

    Args:
        script: JSON-able object (or raw text, or an exception to raise)
            returned for the script call.
        images: Optional queue of image responses / exceptions, consumed one
            per image call.  When omitted every image call succeeds with
            ``b"image-<n>"``.
    """

    def __init__(self, script: Any, images: Optional[List[Any]] = None):
        self.script = script
        self.images = list(images) if images is not None else None
        self.calls: List[SimpleNamespace] = []

    @staticmethod
    def _is_script_call(call: SimpleNamespace) -> bool:
        return call.config is not None and call.config.response_mime_type == "application/json"

    @property
    def text_calls(self) -> List[SimpleNamespace]:
        return [c for c in self.calls if self._is_script_call(c)]

    @property
    def image_calls(self) -> List[SimpleNamespace]:
        return [c for c in self.calls if not self._is_script_call(c)]

    def generate_content(self, model, contents, config=None):
        call = SimpleNamespace(model=model, contents=contents, config=config)
        self.calls.append(call)

        if self._is_script_call(call):
            if isinstance(self.script, Exception):
                raise self.script
            return text_response(self.script)

        if self.images is None:
            return image_response(f"image-{len(self.image_calls) - 1}".encode())
        item = self.images.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeClient:
    def __init__(self, models: FakeModels):
        self.models = models


@pytest.fixture
def make_gaic() -> Callable[..., tuple]:
    """Factory returning ``(GAIC, FakeModels)`` wired to a fake client."""

    def _make(script: Any, images: Optional[List[Any]] = None):
        models = FakeModels(script, images)
        return comicgen.GAIC(client=FakeClient(models)), models

    return _make


@pytest.fixture
def png_bytes() -> bytes:
    """A tiny real PNG image."""
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), (200, 30, 30)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def two_panel_script() -> dict:
    return {
        "panels": [
            {"panel": 1, "dialogue": "我們終於到了。", "image_prompt": "A"},
            {"panel": 2, "dialogue": "那是什麼聲音？", "image_prompt": "B"},
        ]
    }


@pytest.fixture
def api_key(monkeypatch) -> str:
    monkeypatch.setenv("GOOGLE_API_KEY", "test-key")
    return "test-key"


@pytest.fixture
def fake_backend(monkeypatch, api_key) -> Callable[..., FakeModels]:
    """Point ``server.GAIC`` at a fake client; returns the recording models."""

    def _install(script: Any, images: Optional[List[Any]] = None) -> FakeModels:
        models = FakeModels(script, images)
        monkeypatch.setattr(
            server, "GAIC", lambda key: comicgen.GAIC(key, client=FakeClient(models))
        )
        return models

    return _install


@pytest.fixture
def test_client():
    server.app.config["TESTING"] = True
    with server.app.test_client() as client:
        yield client
