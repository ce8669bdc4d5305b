"""Centralized logging service using loguru."""

import logging
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from wykra.config import settings

LOG_DIR = Path("logs")
LOG_DIR.mkdir(exist_ok=True)

# Remove default handler
logger.remove()

logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level=settings.app_log_level.upper(),
    colorize=True,
)

logger.add(
    LOG_DIR / "wykra_{time:YYYY-MM-DD}.log",
    format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
    level="DEBUG",
    rotation="00:00",
    retention="7 days",
    compression="zip",
)

# Reduce noise from framework/network libraries
for logger_name in (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
    "httpx",
    "httpcore",
    "openai._base_client",
    "asyncpg",
    "redis",
    "asyncio",
):
    logging.getLogger(logger_name).setLevel(settings.noisy_log_level.upper())


def log_llm_call(
    model: str,
    caller: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    duration_ms: int = 0,
    status: str = "success",
    error: Optional[str] = None,
) -> None:
    """Log one chat-completion call with its token usage."""
    bound = logger.bind(
        event="llm_call",
        model=model,
        caller=caller,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
        duration_ms=duration_ms,
        status=status,
    )
    if error:
        bound.error(f"LLM call {caller} -> {model} failed after {duration_ms}ms: {error}")
    else:
        bound.info(
            f"LLM call {caller} -> {model}: {input_tokens} in / {output_tokens} out tokens, {duration_ms}ms"
        )


def log_task_transition(
    task_id: str,
    from_status: str | None,
    to_status: str,
    kind: str | None = None,
) -> None:
    logger.bind(event="task_transition", task_id=task_id, kind=kind).info(
        f"[{task_id}] {from_status or 'new'} -> {to_status}"
    )


def log_db_operation(
    operation: str,
    table: str,
    status: str,
    details: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Log a database operation. Failures go out at error level."""
    bound = logger.bind(event="db_operation", operation=operation, table=table, status=status)
    suffix = f" ({details})" if details else ""
    if error:
        bound.error(f"DB {operation} on {table} failed{suffix}: {error}")
    else:
        bound.debug(f"DB {operation} on {table}: {status}{suffix}")


def log_event(event_type: str, message: str, **kwargs) -> None:
    """Log a named event; keyword arguments travel as loguru extras."""
    logger.bind(event=event_type, **kwargs).info(message)
