"""
Ordered routing rule table.

Readers take the current snapshot (an immutable tuple) without locking;
writers build a new tuple under a lock and swap the reference, so a dispatch
never sees a half-applied registration.
"""

import itertools
import logging
import re
import threading
from dataclasses import replace
from typing import Dict, Iterator, Optional, Tuple
from urllib.parse import urlparse

from service_proxy.errors import InvalidRuleError
from service_proxy.rules.models import (
    PathMatchKind,
    ProxyAction,
    RoutingRule,
    StaticResponseAction,
)

logger = logging.getLogger("uvicorn.error")

_ALLOWED_SCHEMES = ("http", "https")


def validate_target_url(url: str) -> str:
    """
    Check that url is an absolute http(s) origin: scheme, host and optional port.

    Returns the url without a trailing slash.
    """
    if not isinstance(url, str) or not url.strip():
        raise InvalidRuleError("Target URL must be a non-empty string")
    try:
        parsed = urlparse(url.strip())
        port = parsed.port
    except ValueError as e:
        raise InvalidRuleError(f"Malformed target URL '{url}': {e}")
    if parsed.username is not None or parsed.password is not None:
        # Never echo the URL here
        raise InvalidRuleError(
            f"Target URL for host '{parsed.hostname}' must not carry user credentials"
        )
    if parsed.scheme.lower() not in _ALLOWED_SCHEMES:
        raise InvalidRuleError(
            f"Target URL '{url}' must use http or https, got '{parsed.scheme}'"
        )
    if not parsed.hostname:
        raise InvalidRuleError(f"Target URL '{url}' has no host")
    if parsed.path not in ("", "/") or parsed.query or parsed.fragment:
        raise InvalidRuleError(
            f"Target URL '{url}' must only contain scheme, host and port"
        )
    if port == 0:
        raise InvalidRuleError(f"Target URL '{url}' has an invalid port")
    return url.strip().rstrip("/")


def _compile_path(rule: RoutingRule) -> Optional[re.Pattern]:
    if not isinstance(rule.path_pattern, str) or not rule.path_pattern:
        raise InvalidRuleError("Path pattern must be a non-empty string", rule_id=rule.id)
    if rule.path_kind is PathMatchKind.EXACT:
        return None
    try:
        return re.compile(rule.path_pattern)
    except re.error as e:
        raise InvalidRuleError(
            f"Invalid path pattern '{rule.path_pattern}': {e}", rule_id=rule.id
        )


def _validate_action(rule: RoutingRule) -> RoutingRule:
    action = rule.action
    if isinstance(action, ProxyAction):
        try:
            target = validate_target_url(action.target_base_url)
        except InvalidRuleError as e:
            raise InvalidRuleError(str(e), rule_id=rule.id)
        return replace(rule, action=ProxyAction(target))
    if isinstance(action, StaticResponseAction):
        if not 100 <= action.status <= 599:
            raise InvalidRuleError(
                f"Static response status {action.status} is out of range",
                rule_id=rule.id,
            )
    return rule


class RuleTable:
    def __init__(self):
        self._rules: Tuple[RoutingRule, ...] = ()
        self._write_lock = threading.Lock()
        self._sequence = itertools.count()

    def register(self, rule: RoutingRule) -> RoutingRule:
        """
        Add a rule to the table.

        Raises:
            InvalidRuleError: duplicate id, uncompilable pattern or malformed target.

        Returns:
            The registered rule, carrying its insertion sequence.
        """
        if not rule.id:
            raise InvalidRuleError("Rule id must not be empty")
        compiled = _compile_path(rule)
        rule = _validate_action(rule)
        with self._write_lock:
            if any(existing.id == rule.id for existing in self._rules):
                raise InvalidRuleError(
                    f"Rule '{rule.id}' is already registered", rule_id=rule.id
                )
            registered = replace(
                rule, sequence=next(self._sequence), compiled=compiled
            )
            self._rules = self._rules + (registered,)
        logger.debug(f"[RuleTable] Registered {registered.id}: {registered.describe()}")
        return registered

    def register_if_absent(self, rule: RoutingRule) -> Optional[RoutingRule]:
        """Register rule unless one with the same id exists. Returns None when skipped."""
        if rule.id in self:
            return None
        try:
            return self.register(rule)
        except InvalidRuleError:
            # Lost a race against another registration of the same id
            if rule.id in self:
                return None
            raise

    def match(self, method: str, path: str) -> Optional[RoutingRule]:
        best = None
        for rule in self._rules:
            if not rule.matches(method, path):
                continue
            if best is None or rule.precedence > best.precedence:
                best = rule
        return best

    def snapshot(self) -> Tuple[RoutingRule, ...]:
        return self._rules

    def get(self, rule_id: str) -> Optional[RoutingRule]:
        for rule in self._rules:
            if rule.id == rule_id:
                return rule
        return None

    def proxy_mappings(self) -> Dict[str, str]:
        """Path pattern to target URL for every proxy rule, in registration order."""
        mappings: Dict[str, str] = {}
        for rule in self._rules:
            if isinstance(rule.action, ProxyAction):
                mappings[rule.path_pattern] = rule.action.target_base_url
        return mappings

    def __contains__(self, rule_id: object) -> bool:
        return any(rule.id == rule_id for rule in self._rules)

    def __iter__(self) -> Iterator[RoutingRule]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)
