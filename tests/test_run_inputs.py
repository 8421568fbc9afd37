"""
Tests for run input normalization and token substitution.

This module verifies that:
1. Keys normalize (case, separators, URL/folder synonyms)
2. Lookups find values under equivalent keys
3. {{input.<key>}} tokens are substituted, with MISSING_INPUT markers
4. Sensitive values are redacted from summaries
"""

from stepflow.runtime.run_inputs import (
    are_run_input_keys_equivalent,
    extract_input_keys,
    format_run_inputs_summary,
    get_run_input_value,
    is_sensitive_run_input_key,
    is_truthy_run_input,
    normalize_run_input_key,
    normalize_run_inputs,
    replace_input_tokens,
)

# ============================================================================
# Key Normalization Tests
# ============================================================================


class TestKeyNormalization:
    """Tests for normalize_run_input_key."""

    def test_synonyms_and_separators(self):
        """Test spaces, dashes and dots collapse; URL becomes link."""
        assert normalize_run_input_key("Figma URL") == "figma_link"
        assert normalize_run_input_key("output-folder") == "output_dir"
        assert normalize_run_input_key("  deck..source  ") == "deck_source"
        assert normalize_run_input_key("") == ""

    def test_location_suffix_equivalence(self):
        """Test a _path suffix is equivalent to the bare key."""
        assert are_run_input_keys_equivalent("figma_link_path", "figma-url")
        assert not are_run_input_keys_equivalent("figma_link", "pdf_link")

    def test_secret_qualifier_equivalence(self):
        """Test api/access qualifiers do not change a secret key's identity."""
        assert are_run_input_keys_equivalent("figma_access_token", "figma_token")


# ============================================================================
# Lookup Tests
# ============================================================================


class TestLookup:
    """Tests for get_run_input_value and friends."""

    def test_direct_and_equivalent_lookup(self):
        """Test lookups by normalized and equivalent keys."""
        inputs = {"figma_link_path": "https://figma.example/file"}

        assert get_run_input_value(inputs, "Figma URL") == "https://figma.example/file"
        assert get_run_input_value(inputs, "pdf_link") is None
        assert get_run_input_value(inputs, "") is None

    def test_truthy_input(self):
        """Test truthiness follows the usual false spellings."""
        inputs = {"force_rebuild": "yes", "no_cache": "off"}

        assert is_truthy_run_input(inputs, "force_rebuild")
        assert not is_truthy_run_input(inputs, "no_cache")
        assert not is_truthy_run_input(inputs, "missing")

    def test_normalize_mapping(self):
        """Test raw mappings normalize keys and stringify values."""
        normalized = normalize_run_inputs({"Output-Dir": "/tmp/out", "count": 3, "skip": None})

        assert normalized == {"output_dir": "/tmp/out", "count": "3"}

    def test_most_specific_key_wins(self):
        """Test equivalent keys merge under the most specific name."""
        normalized = normalize_run_inputs({"Figma URL": "a", "figma_link_path": "b"})

        assert normalized == {"figma_link_path": "b"}

    def test_non_mapping_yields_empty(self):
        """Test a non-mapping payload normalizes to an empty dict."""
        assert normalize_run_inputs(["a", "b"]) == {}


# ============================================================================
# Token Substitution Tests
# ============================================================================


class TestTokens:
    """Tests for input token substitution."""

    def test_replace_tokens(self):
        """Test present keys substitute and missing keys are marked."""
        text = "Write to {{input.Output-Dir}} from {{ input.missing }}"

        result = replace_input_tokens(text, {"output_dir": "/tmp/o"})

        assert result == "Write to /tmp/o from MISSING_INPUT:missing"

    def test_extract_keys(self):
        """Test token keys are extracted once each, normalized."""
        keys = extract_input_keys("{{input.Figma-URL}} {{input.figma_link}} {{input.pdf}}")

        assert keys == ["figma_link", "pdf"]

    def test_empty_text(self):
        """Test empty text passes through."""
        assert replace_input_tokens("", {"a": "b"}) == ""


# ============================================================================
# Summary Tests
# ============================================================================


class TestSummary:
    """Tests for format_run_inputs_summary."""

    def test_redacts_sensitive_values(self):
        """Test secrets are redacted and entries are sorted."""
        summary = format_run_inputs_summary({"output_dir": "/x", "api_key": "sk-1", "figma_token": "t"})

        assert summary == "- api_key: [REDACTED]\n- figma_token: [REDACTED]\n- output_dir: /x"

    def test_empty_summary(self):
        """Test an empty mapping summarizes as None."""
        assert format_run_inputs_summary({}) == "None"
        assert format_run_inputs_summary({"blank": "  "}) == "None"

    def test_sensitive_key_detection(self):
        """Test sensitive key detection."""
        assert is_sensitive_run_input_key("Figma Access Token")
        assert is_sensitive_run_input_key("db_password")
        assert not is_sensitive_run_input_key("output_dir")
