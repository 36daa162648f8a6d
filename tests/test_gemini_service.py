import json
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

import gemini_service
from conftest import analysis_payload, empty_image_response, image_response, text_response
from gemini_service import (
    AnalysisFailed,
    EditFailed,
    GenerationFailed,
    MissingCredential,
    analyze_clothing_item,
    build_visual_prompt,
    edit_image_with_prompt,
    generate_outfit_visual,
)
from image_intake import InlineImage
from stylist_state import OutfitStyle, VisualType


def _sent_contents(client):
    return client.models.generate_content.call_args.kwargs["contents"]


class TestClient:

    def test_no_key_gives_no_client(self):
        assert gemini_service.create_client(None) is None
        assert gemini_service.create_client("") is None

    def test_client_built_from_key(self):
        with patch.object(gemini_service.genai, "Client") as mock_client:
            client = gemini_service.create_client("test-key")

        mock_client.assert_called_once_with(api_key="test-key")
        assert client is mock_client.return_value

    @pytest.mark.parametrize("call", [
        lambda img: analyze_clothing_item(None, img),
        lambda img: generate_outfit_visual(None, img, "desc", OutfitStyle.CASUAL, VisualType.FLAT_LAY),
        lambda img: edit_image_with_prompt(None, img, "brighter"),
    ])
    def test_every_call_requires_credential(self, item_image, call):
        with pytest.raises(MissingCredential):
            call(item_image)


class TestAnalyze:

    def test_success_sends_image_prompt_and_schema(self, fake_client, item_image):
        result = analyze_clothing_item(fake_client, item_image)

        assert [p.style for p in result.outfit_plans] == list(OutfitStyle)
        assert result.item_analysis.category == "Overshirt"

        kwargs = fake_client.models.generate_content.call_args.kwargs
        assert kwargs["model"] == gemini_service.ANALYSIS_MODEL
        image_part, prompt = kwargs["contents"]
        assert image_part.inline_data.data == item_image.data
        assert image_part.inline_data.mime_type == "image/png"
        assert "gender-neutral" in prompt
        assert kwargs["config"].response_mime_type == "application/json"
        assert kwargs["config"].response_schema == gemini_service.ANALYSIS_SCHEMA

    def test_schema_restricts_styles(self):
        plans = gemini_service.ANALYSIS_SCHEMA.properties["outfitPlans"]

        assert plans.items.properties["style"].enum == ["Casual", "Business", "Night Out"]
        assert plans.min_items == plans.max_items == 3

    def test_markdown_fences_tolerated(self, fake_client, item_image):
        fenced = "```json\n" + json.dumps(analysis_payload()) + "\n```"
        fake_client.models.generate_content.return_value = text_response(fenced)

        assert len(analyze_clothing_item(fake_client, item_image).outfit_plans) == 3

    @pytest.mark.parametrize("text", [None, "", "not json {", json.dumps(["a", "b"])])
    def test_empty_or_unparseable_fails(self, fake_client, item_image, text):
        fake_client.models.generate_content.return_value = text_response(text)

        with pytest.raises(AnalysisFailed):
            analyze_clothing_item(fake_client, item_image)

    def test_truncated_plan_list_fails(self, fake_client, item_image):
        payload = analysis_payload(styles=("Casual", "Business"))
        fake_client.models.generate_content.return_value = text_response(json.dumps(payload))

        with pytest.raises(AnalysisFailed, match="one plan per style"):
            analyze_clothing_item(fake_client, item_image)

    def test_transport_error_wrapped(self, fake_client, item_image):
        fake_client.models.generate_content.side_effect = RuntimeError("503 UNAVAILABLE")

        with pytest.raises(AnalysisFailed) as excinfo:
            analyze_clothing_item(fake_client, item_image)
        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert excinfo.value.user_message.startswith("We couldn't analyze")
        assert fake_client.models.generate_content.call_count == 1


class TestGenerate:

    def test_flat_lay_prompt(self):
        prompt = build_visual_prompt(OutfitStyle.BUSINESS, "Navy trousers, loafers.", VisualType.FLAT_LAY)

        assert "flat-lay" in prompt
        assert "Business outfit" in prompt
        assert "Navy trousers, loafers." in prompt
        assert "gender-neutral" in prompt

    def test_on_model_prompt(self):
        prompt = build_visual_prompt(OutfitStyle.NIGHT_OUT, "Black boots.", VisualType.ON_MODEL)

        assert "full-body" in prompt
        assert "gender-neutral model" in prompt
        assert "Night Out" in prompt

    def test_returns_first_inline_image(self, fake_client, item_image):
        response = image_response(data=b"first", mime_type="image/jpeg")
        response.candidates[0].content.parts.append(
            SimpleNamespace(text=None, inline_data=SimpleNamespace(data=b"second", mime_type="image/png"))
        )
        fake_client.models.generate_content.return_value = response

        result = generate_outfit_visual(fake_client, item_image, "desc",
                                        OutfitStyle.CASUAL, VisualType.ON_MODEL)

        assert result == InlineImage(data=b"first", mime_type="image/jpeg")
        assert result.data_url.startswith("data:image/jpeg;base64,")
        kwargs = fake_client.models.generate_content.call_args.kwargs
        assert kwargs["model"] == gemini_service.IMAGE_MODEL
        assert kwargs["config"].response_modalities == ["Text", "Image"]

    def test_missing_mime_defaults_to_png(self, fake_client, item_image):
        fake_client.models.generate_content.return_value = image_response(mime_type=None)

        result = generate_outfit_visual(fake_client, item_image, "d",
                                        OutfitStyle.CASUAL, VisualType.FLAT_LAY)

        assert result.mime_type == "image/png"

    @pytest.mark.parametrize("response", [
        empty_image_response(),
        SimpleNamespace(text=None, candidates=[]),
        SimpleNamespace(text=None, candidates=None),
        SimpleNamespace(text=None, candidates=[SimpleNamespace(content=None)]),
        image_response(data=b""),
    ])
    def test_no_image_part_fails(self, fake_client, item_image, response):
        fake_client.models.generate_content.return_value = response

        with pytest.raises(GenerationFailed, match="No image generated"):
            generate_outfit_visual(fake_client, item_image, "d",
                                   OutfitStyle.CASUAL, VisualType.FLAT_LAY)

    def test_transport_error_wrapped(self, fake_client, item_image):
        fake_client.models.generate_content.side_effect = ConnectionError("reset")

        with pytest.raises(GenerationFailed):
            generate_outfit_visual(fake_client, item_image, "d",
                                   OutfitStyle.BUSINESS, VisualType.ON_MODEL)


class TestEdit:

    def test_sends_current_image_and_instruction(self, fake_client):
        current = InlineImage(data=b"current", mime_type="image/jpeg")
        fake_client.models.generate_content.return_value = image_response(data=b"edited")

        result = edit_image_with_prompt(fake_client, current, "  Change background to marble ")

        assert result.data == b"edited"
        image_part, instruction = _sent_contents(fake_client)
        assert image_part.inline_data.data == b"current"
        assert image_part.inline_data.mime_type == "image/jpeg"
        assert instruction == "Change background to marble"

    def test_no_image_fails(self, fake_client, item_image):
        fake_client.models.generate_content.return_value = empty_image_response()

        with pytest.raises(EditFailed):
            edit_image_with_prompt(fake_client, item_image, "add a hat")

    def test_blank_instruction_rejected_without_call(self, item_image):
        client = MagicMock()

        with pytest.raises(ValueError):
            edit_image_with_prompt(client, item_image, "   ")
        client.models.generate_content.assert_not_called()
