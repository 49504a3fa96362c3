import pytest

from farmassist.services.json_utils import extract_json_object, looks_like_safety_verdict


class TestExtractJsonObject:
    def test_bare_json(self):
        assert extract_json_object('{"disease": "Leaf Rust", "confidence": 0.9}') == {
            "disease": "Leaf Rust",
            "confidence": 0.9,
        }

    def test_fenced_json(self):
        content = '```json\n{"disease": "Early Blight"}\n```'
        assert extract_json_object(content)["disease"] == "Early Blight"

    def test_fence_without_language(self):
        content = 'Here you go:\n```\n{"disease": "Healthy"}\n```\nThanks'
        assert extract_json_object(content)["disease"] == "Healthy"

    def test_unterminated_fence(self):
        content = '```json\n{"disease": "Powdery Mildew", "confidence": 0.7}'
        assert extract_json_object(content)["confidence"] == 0.7

    def test_json_with_preamble_and_trailer(self):
        content = (
            "After looking at the leaf carefully I think this is the answer.\n"
            '{"disease": "Bacterial Spot", "symptoms": ["dark lesions"]}\n'
            "Let me know if you need more."
        )
        assert extract_json_object(content)["symptoms"] == ["dark lesions"]

    def test_braces_inside_strings(self):
        content = 'note {not json} then {"disease": "Rust {stage 2}", "confidence": 0.5}'
        assert extract_json_object(content)["disease"] == "Rust {stage 2}"

    def test_unmatched_brace_in_preamble(self):
        content = 'Note {see below. {"disease": "Leaf Rust", "confidence": 0.9}'
        assert extract_json_object(content)["disease"] == "Leaf Rust"

    def test_unmatched_brace_after_broken_candidate(self):
        content = 'Result {draft, {"x": } and then {"disease": "Smut"} {unclosed'
        assert extract_json_object(content) == {"disease": "Smut"}

    def test_nested_objects_returns_outermost(self):
        content = 'x {"disease": "Blight", "meta": {"model": "v1"}} y'
        data = extract_json_object(content)
        assert data["meta"] == {"model": "v1"}

    def test_dict_passthrough(self):
        data = {"disease": "Healthy"}
        assert extract_json_object(data) is data

    @pytest.mark.parametrize("content", ["", "   ", None, "the leaf looks sick", "[1, 2, 3]", "{broken"])
    def test_non_json_raises(self, content):
        with pytest.raises(ValueError):
            extract_json_object(content)


def test_safety_verdict_detection():
    assert looks_like_safety_verdict("safe")
    assert looks_like_safety_verdict("unsafe\nS1")
    assert not looks_like_safety_verdict('{"disease": "safe"}')
    assert not looks_like_safety_verdict("")
    assert not looks_like_safety_verdict(None)
