"""Tests for keyword rule categorization."""

import pytest

from distill.learn.categorizer import categorize_rule


class TestCategorizeRule:
    @pytest.mark.parametrize(
        "text, category",
        [
            ("Run git status before every commit", "git"),
            ("Activate the venv before calling pip", "python"),
            ("Fix the tsconfig paths instead of casting as any", "typescript"),
            ("Keep useEffect dependencies complete in every component", "react"),
            ("Read the file before you Edit it", "file-editing"),
            ("Find the root cause before patching symptoms", "debugging"),
            ("Add a unit test for every bug fix", "testing"),
            ("Refactor toward small modular services", "architecture"),
            ("Keep environment settings in one config module", "config"),
            ("Never print an API key or password", "security"),
            ("Write a plan before a multi-phase change", "planning"),
            ("Check the build passes before you deploy", "deployment"),
        ],
    )
    def test_keyword_categories(self, text, category):
        assert category in categorize_rule(text)

    def test_multiple_categories(self):
        categories = categorize_rule("Run pytest before every git push")

        assert "testing" in categories
        assert "git" in categories

    def test_fallback_is_general(self):
        assert categorize_rule("Be kind to future readers") == ["general"]
