"""Tests for the post-login redirection cascade."""

from urllib.parse import parse_qs, urlsplit

import pytest

from tenantgate.service.redirection import (
    MATCH_ANY_ROLE_DEFAULT,
    MATCH_ANY_ROLE_FIRST,
    MATCH_FALLBACK,
    MATCH_SPECIFIC_ROLE_DEFAULT,
    MATCH_SPECIFIC_ROLE_FIRST,
    append_token_to_url,
    compute_redirection,
    enforce_single_default,
    normalize_url,
    resolve_redirection,
    validate_redirection_settings,
)
from tenantgate.storage.models import RedirectionRule, RedirectionUrl

PAGE = "https://login.acme.test/signin"


def _rule(role, *urls, page=PAGE, env="production"):
    return RedirectionRule(
        auth_page_url=page,
        role_slug=role,
        env=env,
        urls=[RedirectionUrl(url, default) for url, default in urls],
    )


class TestNormalizeUrl:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("https://Login.Acme.test/signin/", "login.acme.test/signin"),
            ("http://login.acme.test/signin", "login.acme.test/signin"),
            ("  login.acme.test/signin  ", "login.acme.test/signin"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_url(raw) == expected


class TestResolveRedirection:
    def test_specific_first_beats_any_default(self):
        rules = [_rule("admin", ("A", False)), _rule("any", ("B", True))]
        result = resolve_redirection(rules, "admin", PAGE)
        assert result.url == "A"
        assert result.match_type == MATCH_SPECIFIC_ROLE_FIRST

    def test_specific_default(self):
        rules = [_rule("admin", ("A1", False), ("A2", True))]
        result = resolve_redirection(rules, "admin", PAGE)
        assert (result.url, result.match_type) == ("A2", MATCH_SPECIFIC_ROLE_DEFAULT)

    def test_default_across_specific_rules(self):
        rules = [_rule("admin", ("A1", False)), _rule("admin", ("A2", True))]
        result = resolve_redirection(rules, "admin", PAGE)
        assert (result.url, result.match_type) == ("A2", MATCH_SPECIFIC_ROLE_DEFAULT)

    def test_any_role_default_then_first(self):
        rules = [_rule("any", ("B1", False), ("B2", True))]
        assert resolve_redirection(rules, "user", PAGE).match_type == MATCH_ANY_ROLE_DEFAULT
        rules = [_rule("any", ("B1", False), ("B2", False))]
        result = resolve_redirection(rules, "user", PAGE)
        assert (result.url, result.match_type) == ("B1", MATCH_ANY_ROLE_FIRST)

    def test_other_roles_rules_ignored(self):
        rules = [_rule("admin", ("A", True))]
        result = resolve_redirection(rules, "user", PAGE, "/home")
        assert (result.url, result.match_type) == ("/home", MATCH_FALLBACK)

    @pytest.mark.parametrize("role", ["admin", "user", "any"])
    def test_no_page_match_falls_back(self, role):
        rules = [_rule("admin", ("A", True)), _rule("any", ("B", True))]
        result = resolve_redirection(rules, role, "https://elsewhere.test/login", "/profile")
        assert (result.url, result.match_type) == ("/profile", MATCH_FALLBACK)

    def test_page_match_is_normalized(self):
        rules = [_rule("any", ("B", True), page="HTTPS://LOGIN.ACME.TEST/signin/")]
        assert resolve_redirection(rules, "user", "login.acme.test/signin").url == "B"

    def test_empty_urls_skipped(self):
        rules = [_rule("admin", ("", True)), _rule("any", ("B", False))]
        result = resolve_redirection(rules, "admin", PAGE)
        assert (result.url, result.match_type) == ("B", MATCH_ANY_ROLE_FIRST)

    def test_no_rules(self):
        assert resolve_redirection([], "user", PAGE).match_type == MATCH_FALLBACK
        assert resolve_redirection(None, "user", PAGE, "/x").url == "/x"


class TestAppendToken:
    def test_absolute_url_with_query(self):
        url = append_token_to_url("https://app.test/home?tab=1", "tok", 1700000000)
        parts = urlsplit(url)
        assert parts.netloc == "app.test"
        assert parse_qs(parts.query) == {"tab": ["1"], "token": ["tok"], "exp": ["1700000000"]}

    def test_relative_url(self):
        assert append_token_to_url("/profile", "tok") == "/profile?token=tok"

    def test_replaces_existing_token(self):
        once = append_token_to_url("https://app.test/?a=b", "first")
        twice = append_token_to_url(once, "second")
        assert parse_qs(urlsplit(twice).query) == {"a": ["b"], "token": ["second"]}

    def test_idempotent(self):
        once = append_token_to_url("https://app.test/x", "tok", 5)
        assert append_token_to_url(once, "tok", 5) == once

    def test_non_http_scheme(self):
        url = append_token_to_url("myapp://callback?x=1", "tok")
        assert url == "myapp://callback?x=1&token=tok"

    def test_empty_values(self):
        assert append_token_to_url("", "tok") == ""
        assert append_token_to_url("/profile", "") == "/profile"


class TestComputeRedirection:
    def test_result_carries_appended_url(self):
        rules = [_rule("admin", ("https://admin.acme.test/", True))]
        result = compute_redirection(rules, "admin", PAGE, "tok")
        assert result.url == "https://admin.acme.test/"
        assert result.token_appended_url == "https://admin.acme.test/?token=tok"
        assert result.match_type == MATCH_SPECIFIC_ROLE_DEFAULT

    def test_fallback_gets_token(self):
        result = compute_redirection([], "user", PAGE, "tok", fallback_url="/profile")
        assert result.token_appended_url == "/profile?token=tok"


class TestValidation:
    def test_single_default_per_group_passes(self):
        rules = [
            _rule("admin", ("A", True)),
            _rule("admin", ("A2", True), env="staging"),
            _rule("any", ("B", True)),
        ]
        assert validate_redirection_settings(rules) == []

    def test_duplicate_defaults_reported(self):
        rules = [_rule("admin", ("A", True)), _rule("admin", ("A2", True))]
        problems = validate_redirection_settings(rules)
        assert len(problems) == 1
        assert "production-admin" in problems[0]

    def test_enforce_single_default(self):
        rules = [
            _rule("admin", ("A", True), ("A2", False)),
            _rule("any", ("B", True)),
        ]
        fixed = enforce_single_default(rules, "production", "admin", "A2")
        assert [(u.url, u.is_default) for u in fixed[0].urls] == [("A", False), ("A2", True)]
        assert fixed[1].urls[0].is_default
        assert rules[0].urls[0].is_default
