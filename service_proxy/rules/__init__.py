from .models import (
    NORMAL_PRIORITY,
    Action,
    HttpMethod,
    InfoAction,
    PathMatchKind,
    ProxyAction,
    RoutingRule,
    StaticResponseAction,
)
from .rule_table import RuleTable, validate_target_url

__all__ = [
    "NORMAL_PRIORITY",
    "Action",
    "HttpMethod",
    "InfoAction",
    "PathMatchKind",
    "ProxyAction",
    "RoutingRule",
    "StaticResponseAction",
    "RuleTable",
    "validate_target_url",
]
