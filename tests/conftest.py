import io
import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from PIL import Image

import app as stylist_app
from image_intake import ClothingItemImage


def make_png(color="navy", size=(8, 8)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def analysis_payload(styles=("Casual", "Business", "Night Out")) -> dict:
    return {
        "itemAnalysis": {
            "description": "A relaxed denim overshirt with patch pockets.",
            "category": "Overshirt",
            "baseColor": "Indigo",
        },
        "outfitPlans": [
            {
                "style": style,
                "description": f"{style} look built around the overshirt.",
                "keyItems": [f"{style} pants", f"{style} shoes"],
                "colorPalette": ["Indigo", "Cream"],
                "whyItWorks": f"Works for {style.lower()} settings.",
            }
            for style in styles
        ],
    }


def text_response(text):
    return SimpleNamespace(text=text, candidates=[])


def image_response(data=b"generated-bytes", mime_type="image/png", with_text=True):
    parts = []
    if with_text:
        parts.append(SimpleNamespace(text="Here is your image.", inline_data=None))
    parts.append(SimpleNamespace(text=None, inline_data=SimpleNamespace(data=data, mime_type=mime_type)))
    return SimpleNamespace(
        text=None,
        candidates=[SimpleNamespace(content=SimpleNamespace(parts=parts))],
    )


def empty_image_response():
    part = SimpleNamespace(text="I can't draw that.", inline_data=None)
    return SimpleNamespace(
        text="I can't draw that.",
        candidates=[SimpleNamespace(content=SimpleNamespace(parts=[part]))],
    )


@pytest.fixture
def png_bytes():
    return make_png()


@pytest.fixture
def item_image(png_bytes):
    return ClothingItemImage(data=png_bytes, mime_type="image/png", filename="shirt.png")


@pytest.fixture
def fake_client():
    """A stand-in for ``genai.Client`` whose generate_content is scripted per test."""
    client = MagicMock()
    client.models.generate_content.return_value = text_response(json.dumps(analysis_payload()))
    return client


@pytest.fixture
def flask_app(monkeypatch, fake_client):
    monkeypatch.setattr(stylist_app, "client", fake_client)
    monkeypatch.setattr(stylist_app, "sessions", stylist_app.SessionRegistry())
    stylist_app.app.config.update(TESTING=True)
    return stylist_app.app


@pytest.fixture
def http(flask_app):
    return flask_app.test_client()


@pytest.fixture
def session_of(flask_app):
    """Return the server-side StylistSession behind a test client."""

    def _lookup(test_client):
        with test_client.session_transaction() as sess:
            return stylist_app.sessions.get(sess["stylist_id"])

    return _lookup
