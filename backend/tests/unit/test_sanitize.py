"""Unit tests for sensitive value redaction."""

import pytest

from wedly_shared.utils.sanitize import sanitize_message, sanitize_value


class TestSanitizeMessage:
    @pytest.mark.parametrize(
        ("raw", "placeholder", "leaked"),
        [
            ("sent to a@example.com", "[email]", "a@example.com"),
            ("card 4242424242424242 declined", "[card]", "4242424242424242"),
            ("card 4242-4242-4242-4242 declined", "[card]", "4242-4242"),
            ("key sk_test_51Habc was rejected", "[stripe_key]", "sk_test_51Habc"),
            ("secret whsec_abc123 rotated", "[webhook_secret]", "whsec_abc123"),
            ("token " + "A" * 48 + " expired", "[token]", "A" * 48),
        ],
    )
    def test_redacts_sensitive_values(self, raw: str, placeholder: str, leaked: str):
        result = sanitize_message(raw)

        assert placeholder in result
        assert leaked not in result

    def test_webhook_secret_keeps_specific_placeholder(self):
        assert sanitize_message("whsec_" + "x" * 50) == "[webhook_secret]"

    def test_short_numbers_are_kept(self):
        assert sanitize_message("amount 4999 AUD, order 12345") == "amount 4999 AUD, order 12345"

    def test_empty_input(self):
        assert sanitize_message(None) == ""
        assert sanitize_message("") == ""


class TestSanitizeValue:
    def test_nested_structures(self):
        value = {
            "buyer": {"email": "a@example.com", "amount": 4999},
            "notes": ["call b@example.com", 7],
            "pair": ("sk_live_abc", True),
        }

        result = sanitize_value(value)

        assert result["buyer"] == {"email": "[email]", "amount": 4999}
        assert result["notes"] == ["call [email]", 7]
        assert result["pair"] == ("[stripe_key]", True)
