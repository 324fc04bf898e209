"""Tests for return path and callback parameter validation."""
import pytest

from auth_broker.auth.errors import MissingParameters
from auth_broker.auth.validation import require_callback_params, validate_return_path

ALLOWED = ["/dashboard", "/orders", "/profile"]
DEFAULT = "/dashboard"


class TestValidateReturnPath:
    """Tests for open-redirect protection."""

    @pytest.mark.parametrize("value,expected", [
        ("/dashboard", "/dashboard"),
        ("/orders", "/orders"),
        ("/orders/123", "/orders/123"),
        ("/profile/", "/profile"),
        ("/orders?tab=open#top", "/orders"),
    ])
    def test_allowed_paths_kept(self, value, expected):
        assert validate_return_path(value, ALLOWED, DEFAULT) == expected

    @pytest.mark.parametrize("value", [
        "https://evil.example.com",
        "https://evil.example.com/dashboard",
        "//evil.example.com",
        "/\\evil.example.com",
        "%2F%2Fevil.example.com",
        "/%2F%2Fevil.example.com",
        "javascript:alert(1)",
        "/dashboard:evil",
        "/orders/../admin",
        "/admin",
        "/ordersx",
        "dashboard",
        "/dash\nboard",
        "",
        None,
        "/" + "a" * 1000,
    ])
    def test_rejected_values_fall_back_to_default(self, value):
        assert validate_return_path(value, ALLOWED, DEFAULT) == DEFAULT

    def test_root_only_matches_exactly(self):
        allowed = ["/", "/login", "/register"]
        assert validate_return_path("/", allowed, "/") == "/"
        assert validate_return_path("/login", allowed, "/") == "/login"
        assert validate_return_path("/anything", allowed, "/") == "/"


class TestRequireCallbackParams:
    def test_returns_code_and_state(self):
        assert require_callback_params({"code": "abc", "state": "xyz"}) == ("abc", "xyz")

    @pytest.mark.parametrize("query", [
        {},
        {"code": "abc"},
        {"state": "xyz"},
        {"code": "", "state": "xyz"},
        {"code": "a" * 3000, "state": "xyz"},
    ])
    def test_missing_or_oversized(self, query):
        with pytest.raises(MissingParameters) as exc_info:
            require_callback_params(query)
        assert exc_info.value.code == "missing_parameters"
