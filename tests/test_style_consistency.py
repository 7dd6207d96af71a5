"""Tests for the prompt style normalizer."""

import pytest

from drama_gateway.core.style_consistency import StyleConsistencyChecker, split_segments


@pytest.fixture
def checker():
    return StyleConsistencyChecker()


class TestWorkedExamples:
    def test_conflicting_style_segment_is_replaced_by_target_style(self, checker):
        result = checker.normalize(
            "best quality, japanese anime style, warm light", "Chinese Animation Style", "")

        assert result.prompt == "best quality, warm light, Chinese Animation Style"
        assert "japanese anime" not in result.prompt.lower()
        assert len(result.violations) >= 1

    def test_foreign_reference_is_rewritten_to_target_reference(self, checker):
        result = checker.normalize(
            "best quality, style reference: Other Ref, cinematic lighting",
            "Chinese Animation Style",
            "Target Ref",
        )

        assert result.prompt.count("style reference: Target Ref") == 1
        assert "Other Ref" not in result.prompt
        assert "Chinese Animation Style" in result.prompt
        assert result.prompt == (
            "best quality, style reference: Target Ref, cinematic lighting, Chinese Animation Style")
        assert len(result.violations) == 1


class TestNormalization:
    def test_empty_prompt(self, checker):
        result = checker.normalize("   ", "Chinese Animation Style", "Target Ref")
        assert result.prompt == ""
        assert result.violations == []

    def test_separators_are_unified(self):
        assert split_segments("a，b、c·d\ne\r\nf,, ,g") == ["a", "b", "c", "d", "e", "f", "g"]

    def test_duplicates_removed_case_insensitively(self, checker):
        result = checker.normalize("Warm Light, warm light, soft focus, WARM LIGHT", "", "")
        assert result.prompt == "Warm Light, soft focus"
        assert result.violations == []

    def test_target_style_not_appended_twice(self, checker):
        result = checker.normalize("hero, chinese animation style, red cape", "Chinese Animation Style", "")
        assert result.prompt == "hero, chinese animation style, red cape"
        assert result.violations == []

    def test_reference_already_matching_is_canonicalised_without_violation(self, checker):
        result = checker.normalize("sword, reference work: Target Ref", "", "Target Ref")
        assert result.prompt == "sword, style reference: Target Ref"
        assert result.violations == []

    def test_reference_markers_left_alone_without_target_reference(self, checker):
        result = checker.normalize("sword, style reference: Some Film", "", "")
        assert result.prompt == "sword, style reference: Some Film"

    def test_keyword_inside_target_style_is_not_a_conflict(self, checker):
        result = checker.normalize("lantern, anime", "anime, cel shaded", "")
        assert result.prompt == "lantern, anime, cel shaded"
        assert result.violations == []

    def test_chinese_style_keywords_conflict(self, checker):
        result = checker.normalize("灯笼，吉卜力风格", "国漫", "")
        assert result.prompt == "灯笼, 国漫"
        assert len(result.violations) == 1

    def test_style_part_with_reference_marker_is_not_rewritten(self, checker):
        result = checker.normalize("style reference", "style reference", "X")
        assert result.prompt == "style reference, style reference: X"
        assert result.violations == []


class TestWhiteBackground:
    def test_conflicting_segment_is_dropped(self, checker):
        result = checker.normalize("product shot, white background with dark floor shadow", "", "")
        assert result.prompt == "product shot"
        assert len(result.violations) == 1

    def test_plain_white_background_is_kept(self, checker):
        result = checker.normalize("product shot, white background, studio lighting", "", "")
        assert result.prompt == "product shot, white background, studio lighting"
        assert result.violations == []

    def test_conflict_words_without_protected_phrase_are_kept(self, checker):
        result = checker.normalize("castle, dark background, long shadow", "", "")
        assert result.prompt == "castle, dark background, long shadow"


IDEMPOTENCE_CASES = [
    ("best quality, japanese anime style, warm light", "Chinese Animation Style", ""),
    ("best quality, style reference: Other Ref, cinematic lighting", "Chinese Animation Style", "Target Ref"),
    ("anime girl, 吉卜力风格，soft light、white background\nstyle reference: Spirited Away", "国漫, 水墨", "Nezha"),
    ("国漫, foo", "国漫，水墨", ""),
    ("white background with shadow, vase", "white background with shadow", "Ref, Part Two"),
    ("Pixar style, disney, chibi hero", "", "A·B"),
    ("", "Chinese Animation Style", "Target Ref"),
    ("STYLE REFERENCE: target ref, Style Reference: Target Ref", "Chinese Animation Style", "Target Ref"),
    ("style reference", "style reference", "X"),
    ("style reference: Y, lamp", "style reference", "X"),
]


@pytest.mark.parametrize("prompt,style,reference", IDEMPOTENCE_CASES)
def test_normalize_is_idempotent(checker, prompt, style, reference):
    once = checker.normalize(prompt, style, reference).prompt
    twice = checker.normalize(once, style, reference).prompt
    assert twice == once


class TestAppendStyle:
    def test_appends_without_replacing(self, checker):
        output = checker.append_style("masterpiece, japanese anime style, warm light",
                                      "Chinese Animation Style", "Test Ref")

        assert output == ("masterpiece, japanese anime style, warm light, "
                          "Chinese Animation Style, style reference: Test Ref")

    def test_dedups_and_canonicalises_reference(self, checker):
        output = checker.append_style("best quality, chinese animation style, inspired by Test Ref",
                                      "Chinese Animation Style", "Test Ref")

        assert output.count("style reference: Test Ref") == 1
        assert output.lower().count("chinese animation style") == 1
        assert output == "best quality, chinese animation style, style reference: Test Ref"

    def test_other_references_are_kept(self, checker):
        output = checker.append_style("vase, inspired by Other Film", "", "Test Ref")
        assert output == "vase, inspired by Other Film, style reference: Test Ref"

    def test_empty_prompt(self, checker):
        assert checker.append_style("  ", "Chinese Animation Style", "Test Ref") == ""

    @pytest.mark.parametrize("prompt,style,reference", [
        ("masterpiece, japanese anime style", "Chinese Animation Style", "Test Ref"),
        ("lamp，inspired by Test Ref、warm light", "国漫, 水墨", "Test Ref"),
        ("style reference", "style reference", "X"),
    ])
    def test_idempotent(self, checker, prompt, style, reference):
        once = checker.append_style(prompt, style, reference)
        assert checker.append_style(once, style, reference) == once
