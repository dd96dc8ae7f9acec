from typing import Iterable, List, Tuple

SENSITIVE_HEADERS = {"authorization", "proxy-authorization", "cookie", "set-cookie"}


def mask_secret(value: str) -> str:
    if not value:
        return value
    if len(value) <= 4:
        return "****"
    return f"{value[:4]}****"


def masked_headers(headers: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    """Header pairs with credential-bearing values masked, for debug logging."""
    return [
        (name, mask_secret(value) if name.lower() in SENSITIVE_HEADERS else value)
        for name, value in headers
    ]
