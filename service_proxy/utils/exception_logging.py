"""
Exception logging helpers that never raise themselves.

Used on paths where a logging failure must not mask the original problem,
such as releasing resources during shutdown.
"""

import logging


def _safe_str(obj) -> str:
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} object (string conversion failed)>"


def _sub_exceptions(exception) -> list:
    try:
        return list(getattr(exception, "exceptions", None) or [])
    except Exception:
        return []


def format_exception_message(exception: BaseException) -> str:
    """
    Format an exception message, listing sub-exceptions of exception groups.

    Args:
        exception: The exception to format

    Returns:
        A string describing the exception
    """
    if exception is None:
        return "None"
    main = _safe_str(exception) or type(exception).__name__
    subs = _sub_exceptions(exception)
    if not subs:
        return main
    parts = [f"{type(sub).__name__}: {_safe_str(sub)}" for sub in subs]
    return f"{main} (Sub-exceptions: {'; '.join(parts)})"


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception, including every sub-exception of an exception group.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g., "[Lifecycle]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
    """
    try:
        subs = _sub_exceptions(exception)
        if not subs:
            logger.log(
                level,
                f"{prefix} Exception: {_safe_str(exception)}",
                exc_info=exception if exception is not None else False,
            )
            return
        logger.log(
            level,
            f"{prefix} Exception with {len(subs)} sub-exceptions: {_safe_str(exception)}",
        )
        for i, sub in enumerate(subs):
            logger.log(
                level,
                f"{prefix} Sub-exception {i + 1}: {type(sub).__name__}: {_safe_str(sub)}",
                exc_info=sub,
            )
    except Exception:
        try:
            logger.log(logging.ERROR, f"{prefix} Exception (logging failed)")
        except Exception:
            pass
