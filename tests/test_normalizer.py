"""Tests for grunts.learning.normalizer."""

from __future__ import annotations

import pytest

from grunts.core.errors import ErrorInput
from grunts.learning.normalizer import ErrorCategory, categorize_error, normalize_error

SAMPLE_ERRORS = [
    "Cannot resolve module 'phaser'",
    "ReferenceError: Phaser is not defined at line 10",
    "SyntaxError: Unexpected token 'export' (line 3, column 14)",
    "TypeError: x.map is not a function at main.js:42:7",
    "Error at /tmp/grunt-3/src/index.js: failed 3 of 12 checks",
    "   Mixed   CASE\twhitespace\n\nand 007 numbers   ",
    "",
    "at at at 5",
]


class TestNormalizeError:
    """Tests for normalize_error()."""

    def test_lowercases_and_strips_punctuation(self) -> None:
        assert normalize_error("Cannot resolve module 'phaser'") == "cannot resolve module phaser"

    def test_quoted_and_unquoted_forms_match(self) -> None:
        assert normalize_error("Cannot resolve module 'phaser'") == normalize_error(
            "Cannot resolve module phaser"
        )

    def test_line_numbers_replaced(self) -> None:
        first = normalize_error("ReferenceError: Phaser is not defined (line 10)")
        second = normalize_error("ReferenceError: Phaser is not defined (line 25)")
        assert first == second
        assert "line num" in first

    def test_column_numbers_replaced(self) -> None:
        assert normalize_error("column 14") == "column num"

    def test_standalone_integers_replaced(self) -> None:
        assert normalize_error("failed 3 of 12 checks") == "failed num of num checks"

    def test_digits_inside_words_kept(self) -> None:
        assert normalize_error("es2015 target") == "es2015 target"

    def test_location_replaced(self) -> None:
        assert normalize_error("TypeError at main.js:42:7") == "typeerror at file"

    def test_location_depth_ignored(self) -> None:
        nested = normalize_error("TypeError: x is undefined at src/game/scene.js:10:5")
        flat = normalize_error("TypeError: x is undefined at main.js:3:1")
        assert nested == flat == "typeerror x is undefined at file"

    def test_location_before_line_number(self) -> None:
        assert normalize_error("Unexpected token at line 42") == "unexpected token at file num"

    def test_whitespace_collapsed_and_trimmed(self) -> None:
        assert normalize_error("  a \t b\n\nc  ") == "a b c"

    def test_empty_input(self) -> None:
        assert normalize_error("") == ""

    def test_accepts_error_input(self) -> None:
        error = ErrorInput("Cannot resolve module 'phaser'", {"file": "main.js"})
        assert normalize_error(error) == "cannot resolve module phaser"

    @pytest.mark.parametrize("raw", SAMPLE_ERRORS)
    def test_idempotent(self, raw: str) -> None:
        once = normalize_error(raw)
        assert normalize_error(once) == once

    @pytest.mark.parametrize("raw", SAMPLE_ERRORS)
    def test_deterministic(self, raw: str) -> None:
        assert normalize_error(raw) == normalize_error(raw)


class TestCategorizeError:
    """Tests for categorize_error()."""

    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            ("Cannot resolve module 'phaser'", ErrorCategory.DEPENDENCY),
            ("Module not found: lodash", ErrorCategory.DEPENDENCY),
            ("SyntaxError: Unexpected end of input", ErrorCategory.SYNTAX),
            ("Unexpected token '<'", ErrorCategory.SYNTAX),
            ("ReferenceError: require is not defined", ErrorCategory.MODULE_SYSTEM),
            ("Cannot use import statement outside a module", ErrorCategory.MODULE_SYSTEM),
            ("Phaser is not defined", ErrorCategory.REFERENCE),
            ("Cannot read properties of undefined", ErrorCategory.REFERENCE),
            ("Failed to load external script", ErrorCategory.EXTERNAL_RESOURCE),
            ("fetch failed: ECONNREFUSED", ErrorCategory.EXTERNAL_RESOURCE),
            ("Assertion failed: expected 3", ErrorCategory.OTHER),
        ],
    )
    def test_keyword_rules(self, message: str, expected: ErrorCategory) -> None:
        assert categorize_error(message) == expected

    def test_dependency_rule_wins_over_later_rules(self) -> None:
        # also contains "import", which belongs to a later rule
        assert categorize_error("Module not found: cannot import x") == ErrorCategory.DEPENDENCY

    def test_works_on_normalized_signature(self) -> None:
        signature = normalize_error("Cannot resolve module 'phaser'")
        assert categorize_error(signature) == ErrorCategory.DEPENDENCY

    def test_category_values_are_strings(self) -> None:
        assert ErrorCategory.MODULE_SYSTEM.value == "module_system"
