import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse

NORMAL_PRIORITY = 0


class HttpMethod(str, Enum):
    """Methods a rule can be bound to. ANY matches every request method."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    ANY = "ANY"

    @classmethod
    def parse(cls, method: Optional[Union[str, "HttpMethod"]]) -> "HttpMethod":
        """Resolve a method name, falling back to ANY for unknown verbs."""
        if isinstance(method, HttpMethod):
            return method
        if not method:
            return cls.ANY
        try:
            return cls(method.strip().upper())
        except ValueError:
            return cls.ANY

    def accepts(self, request_method: str) -> bool:
        return self is HttpMethod.ANY or self.value == request_method.upper()


class PathMatchKind(str, Enum):
    EXACT = "exact"
    PATTERN = "pattern"


@dataclass(frozen=True)
class ProxyAction:
    target_base_url: str

    @property
    def origin(self) -> str:
        parsed = urlparse(self.target_base_url)
        return f"{parsed.scheme}://{parsed.netloc}"


@dataclass(frozen=True)
class StaticResponseAction:
    status: int = 200
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass(frozen=True)
class InfoAction:
    """Serves the service description together with the live proxy mapping."""

    service: str
    version: str
    endpoints: Dict[str, str] = field(default_factory=dict)


Action = Union[ProxyAction, StaticResponseAction, InfoAction]


@dataclass(frozen=True)
class RoutingRule:
    """
    A single routing rule.

    Attributes:
        id: Unique identifier inside a rule table
        method: HTTP method the rule is bound to (ANY for every method)
        path_pattern: Literal path or regular expression, depending on path_kind
        action: What to do with a matching request
        priority: Larger values win over smaller ones
        path_kind: Whether path_pattern is compared literally or as an anchored regex
        sequence: Registration order, assigned by the rule table
    """

    id: str
    method: HttpMethod
    path_pattern: str
    action: Action
    priority: int = NORMAL_PRIORITY
    path_kind: PathMatchKind = PathMatchKind.PATTERN
    sequence: int = -1
    compiled: Optional[re.Pattern] = field(default=None, compare=False, repr=False)

    @property
    def precedence(self) -> Tuple[int, int]:
        return (self.priority, self.sequence)

    def matches_path(self, path: str) -> bool:
        if self.path_kind is PathMatchKind.EXACT:
            return path == self.path_pattern
        pattern = self.compiled or re.compile(self.path_pattern)
        return pattern.fullmatch(path) is not None

    def matches(self, method: str, path: str) -> bool:
        return self.method.accepts(method) and self.matches_path(path)

    def describe(self) -> str:
        if isinstance(self.action, ProxyAction):
            target = self.action.target_base_url
        elif isinstance(self.action, StaticResponseAction):
            target = f"static {self.action.status}"
        else:
            target = "info"
        return f"{self.method.value} {self.path_pattern} -> {target}"
