"""Shared fixtures: a scripted stand-in for the Anthropic client, a throwaway store, sample images."""

import io
import json
from types import SimpleNamespace
from typing import Any, Callable, List, Union

import pytest
from PIL import Image

from snapassets.intake import SelectedImage
from snapassets.storage import AssetStore
from snapassets.vision import VisionClient

Reply = Union[str, dict, Exception, Callable[[dict], Any]]


class FakeMessages:
    def __init__(self, replies: List[Reply]):
        self.replies = list(replies)
        self.calls: List[dict] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if not self.replies:
            raise RuntimeError("no scripted reply left")
        reply = self.replies.pop(0)
        if callable(reply) and not isinstance(reply, Exception):
            reply = reply(kwargs)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, dict):
            reply = json.dumps(reply)
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=reply)])


class FakeAnthropic:
    """Exposes .messages.create(...) like anthropic.Anthropic; replies are consumed in order."""

    def __init__(self, *replies: Reply):
        self.messages = FakeMessages(list(replies))

    @property
    def calls(self) -> List[dict]:
        return self.messages.calls

    def add(self, *replies: Reply) -> None:
        self.messages.replies.extend(replies)


def item_reply(name="Samsung TV", category="electronics", amount=800, **extra) -> dict:
    payload = {
        "name": name,
        "category": category,
        "brand": "Samsung",
        "model": "QN55",
        "serial": None,
        "condition": "good",
        "estimatedValue": {"amount": amount, "currency": "USD"},
        "description": f"A {name}",
        "confidence": 0.9,
        "room": "living room",
    }
    payload.update(extra)
    return payload


def image_bytes(fmt: str = "PNG", color=(200, 30, 30), size=(8, 8)) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", size, color).save(out, format=fmt)
    return out.getvalue()


def selected(name="tv.png", content_type="image/png", data=None, color=(200, 30, 30)) -> SelectedImage:
    return SelectedImage(name=name, content_type=content_type, data=data if data is not None else image_bytes(color=color))


@pytest.fixture
def store(tmp_path) -> AssetStore:
    return AssetStore(
        database_url=f"sqlite:///{tmp_path / 'assets.db'}",
        media_dir=str(tmp_path / "media"),
        media_base_url="/media",
    )


@pytest.fixture
def fake_client() -> FakeAnthropic:
    return FakeAnthropic()


@pytest.fixture
def vision(fake_client) -> VisionClient:
    return VisionClient(client=fake_client, model="test-model")
