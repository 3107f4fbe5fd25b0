"""Post-login destination resolution.

Rules are matched against the page the user authenticated from, then tried
in strict tier order; the first tier that yields a URL wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from tenantgate.logging import get_logger
from tenantgate.storage.models import RedirectionRule, RedirectionUrl

logger = get_logger(__name__)

DEFAULT_FALLBACK_URL = "/profile"
ANY_ROLE = "any"

MATCH_SPECIFIC_ROLE_DEFAULT = "specific-role-default"
MATCH_SPECIFIC_ROLE_FIRST = "specific-role-first"
MATCH_ANY_ROLE_DEFAULT = "any-role-default"
MATCH_ANY_ROLE_FIRST = "any-role-first"
MATCH_FALLBACK = "fallback"

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)


@dataclass(frozen=True)
class RedirectionResult:
    url: str
    match_type: str
    token_appended_url: Optional[str] = None


def normalize_url(url: Optional[str]) -> str:
    """Lowercase, drop an http(s) scheme and a single trailing slash."""
    if not url:
        return ""
    normalized = _SCHEME_RE.sub("", url.strip().lower())
    if normalized.endswith("/"):
        normalized = normalized[:-1]
    return normalized


def _default_url(rules: Iterable[RedirectionRule]) -> Optional[str]:
    for rule in rules:
        for candidate in rule.urls:
            if candidate.is_default and candidate.url:
                return candidate.url
    return None


def _first_url(rules: Iterable[RedirectionRule]) -> Optional[str]:
    for rule in rules:
        for candidate in rule.urls:
            if candidate.url:
                return candidate.url
    return None


def resolve_redirection(
    rules: Optional[Sequence[RedirectionRule]],
    role: str,
    auth_page_url: str,
    fallback_url: str = DEFAULT_FALLBACK_URL,
) -> RedirectionResult:
    if not rules:
        return RedirectionResult(fallback_url, MATCH_FALLBACK)

    page = normalize_url(auth_page_url)
    matching = [
        rule for rule in rules if rule.auth_page_url and normalize_url(rule.auth_page_url) == page
    ]
    if not matching:
        logger.debug("redirection_no_page_match", auth_page_url=auth_page_url)
        return RedirectionResult(fallback_url, MATCH_FALLBACK)

    specific = [rule for rule in matching if rule.role_slug == role]
    any_role = [rule for rule in matching if rule.role_slug == ANY_ROLE]
    tiers = (
        (MATCH_SPECIFIC_ROLE_DEFAULT, _default_url, specific),
        (MATCH_SPECIFIC_ROLE_FIRST, _first_url, specific),
        (MATCH_ANY_ROLE_DEFAULT, _default_url, any_role),
        (MATCH_ANY_ROLE_FIRST, _first_url, any_role),
    )
    for match_type, pick, candidates in tiers:
        url = pick(candidates)
        if url:
            return RedirectionResult(url, match_type)
    return RedirectionResult(fallback_url, MATCH_FALLBACK)


def _hand_append(url: str, token: str, exp: Optional[int]) -> str:
    separator = "&" if "?" in url else "?"
    params = {"token": token}
    if exp is not None:
        params["exp"] = str(exp)
    return f"{url}{separator}{urlencode(params)}"


def append_token_to_url(url: str, token: str, exp: Optional[int] = None) -> str:
    """Set ``token`` (and optionally ``exp``) on ``url``, replacing any existing token."""
    if not url or not token:
        return url
    try:
        parts = urlsplit(url)
    except ValueError:
        return _hand_append(url, token, exp)
    if parts.scheme and parts.scheme.lower() not in {"http", "https"}:
        return _hand_append(url, token, exp)
    drop = {"token"} | ({"exp"} if exp is not None else set())
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in drop]
    query.append(("token", token))
    if exp is not None:
        query.append(("exp", str(exp)))
    return urlunsplit(parts._replace(query=urlencode(query)))


def compute_redirection(
    rules: Optional[Sequence[RedirectionRule]],
    role: str,
    auth_page_url: str,
    token: str,
    *,
    fallback_url: str = DEFAULT_FALLBACK_URL,
    exp: Optional[int] = None,
) -> RedirectionResult:
    result = resolve_redirection(rules, role, auth_page_url, fallback_url)
    appended = append_token_to_url(result.url, token, exp)
    logger.info(
        "redirection_resolved",
        role=role,
        match_type=result.match_type,
        destination=result.url,
    )
    return replace(result, token_appended_url=appended)


def validate_redirection_settings(rules: Sequence[RedirectionRule]) -> List[str]:
    """Report (environment, role) groups with more than one default URL.

    The resolver returns the first default it meets and does not check this
    itself; tenant configuration must pass this check before being saved.
    """
    defaults: Dict[str, int] = {}
    for rule in rules:
        key = f"{rule.env or 'unknown'}-{rule.role_slug or ANY_ROLE}"
        defaults.setdefault(key, 0)
        defaults[key] += sum(1 for u in rule.urls if u.is_default)
    return [
        f"Multiple default URLs found for {key}. Only one default URL is allowed "
        "per environment + role combination."
        for key, count in defaults.items()
        if count > 1
    ]


def enforce_single_default(
    rules: Sequence[RedirectionRule], env: str, role_slug: str, default_url: str
) -> List[RedirectionRule]:
    """Return a copy of ``rules`` where ``default_url`` is the only default in its group."""
    result = []
    for rule in rules:
        if rule.env == env and rule.role_slug == role_slug:
            rule = replace(
                rule,
                urls=[RedirectionUrl(u.url, u.url == default_url) for u in rule.urls],
            )
        result.append(rule)
    return result
