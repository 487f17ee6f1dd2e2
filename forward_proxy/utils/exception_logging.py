"""
Helpers for turning upstream failures into log lines and diagnostic text.
"""

import logging


def _safe_str(obj) -> str:
    """
    Convert an object to string without letting a broken __str__ escape.

    Args:
        obj: The object to convert

    Returns:
        str(obj), repr(obj), or a placeholder naming the type
    """
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
    Describe an exception for a human reader.

    httpx transport errors are frequently raised with an empty message
    (e.g. a bare ``ReadError``), so the class name is used when there is no
    text. Exception groups list their members.

    Args:
        exception: The exception to describe

    Returns:
        A non-empty description
    """
    if exception is None:
        return "None"

    text = _safe_str(exception).strip()
    if not text:
        text = type(exception).__name__

    members = _sub_exceptions(exception)
    if members:
        joined = "; ".join(
            f"{type(sub).__name__}: {format_exception_message(sub)}" for sub in members
        )
        return f"{text} (Sub-exceptions: {joined})"
    return text


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
    with_traceback: bool = False,
) -> None:
    """
    Log an exception, one line per member when it is an exception group.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g. "[Proxy]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
        with_traceback: Attach the traceback to the log record
    """
    members = _sub_exceptions(exception)
    if not members:
        logger.log(
            level,
            f"{prefix} {type(exception).__name__}: {format_exception_message(exception)}",
            exc_info=exception if with_traceback else None,
        )
        return

    logger.log(
        level,
        f"{prefix} Exception with {len(members)} sub-exceptions: {_safe_str(exception)}",
    )
    for i, sub in enumerate(members):
        logger.log(
            level,
            f"{prefix} Sub-exception {i+1}: {type(sub).__name__}: {format_exception_message(sub)}",
            exc_info=sub if with_traceback else None,
        )
