"""Tests for secret redaction of step params."""

from loginpilot.learning.sanitize import REDACTED, is_sensitive_key, sanitize_params


class TestSensitiveKeys:
    def test_matches_substrings_case_insensitively(self):
        for key in ("password", "newPassword", "TOTP", "authCode", "api_token", "clientSecret", "Credentials"):
            assert is_sensitive_key(key), key

    def test_plain_keys_pass(self):
        for key in ("username", "buttonText", "item_id", "source", "duration"):
            assert not is_sensitive_key(key), key


class TestSanitizeParams:
    def test_redacts_top_level(self):
        result = sanitize_params({"username": "alice", "password": "hunter2"})
        assert result == {"username": "alice", "password": REDACTED}

    def test_redacts_nested_dicts(self):
        result = sanitize_params({"outer": {"inner": {"secretKey": "s3cr3t", "keep": 1}}})
        assert result["outer"]["inner"] == {"secretKey": REDACTED, "keep": 1}

    def test_redacts_dicts_inside_lists(self):
        result = sanitize_params({"fields": [{"token": "abc"}, {"name": "email"}, "plain"]})
        assert result["fields"] == [{"token": REDACTED}, {"name": "email"}, "plain"]

    def test_whole_nested_value_redacted_under_sensitive_key(self):
        result = sanitize_params({"credentials": {"username": "a", "password": "b"}})
        assert result["credentials"] == REDACTED

    def test_input_not_mutated(self):
        params = {"code": "123456", "nested": {"password": "x"}}
        sanitize_params(params)
        assert params == {"code": "123456", "nested": {"password": "x"}}

    def test_no_secret_survives_at_any_depth(self):
        params = {"a": [{"b": {"c": [{"otpCode": "999999"}]}}], "password": "pw"}
        assert "999999" not in repr(sanitize_params(params))
        assert "pw" not in sanitize_params(params).values()
