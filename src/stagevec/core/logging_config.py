"""Structured logging configuration for stagevec."""

from typing import Any, Dict, Optional
import logging
import sys

import structlog
from structlog.stdlib import LoggerFactory

# Client libraries that log every HTTP request or index build at INFO
NOISY_LOGGERS = ("httpx", "openai", "faiss.loader", "sentence_transformers", "alembic.runtime.migration")


def configure_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Route stdlib and structlog output to stderr, keeping stdout for command results."""
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, stream=sys.stderr, format="%(message)s")
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_audit_logger(component: str) -> structlog.BoundLogger:
    """Get a logger with audit context for a specific component."""
    logger = structlog.get_logger(component)
    return logger.bind(component=component, audit=True)


def log_ingestion_event(
    logger: structlog.BoundLogger,
    path: str,
    document_id: str,
    pages: int,
    failed_pages: int,
    chunks_created: int,
    embed_model: str,
    file_hash: str,
    processing_time_ms: float
) -> None:
    """Log document ingestion for audit trail."""
    logger.info(
        "document_ingested",
        path=path,
        document_id=document_id,
        pages=pages,
        failed_pages=failed_pages,
        chunks_created=chunks_created,
        embed_model=embed_model,
        file_hash=file_hash,
        processing_time_ms=processing_time_ms,
        event_type="document_ingestion"
    )


def log_document_failure(
    logger: structlog.BoundLogger,
    path: str,
    stage: str,
    error: Exception
) -> None:
    """Log a document that was skipped because one of its steps failed."""
    logger.error(
        "document_failed",
        path=path,
        stage=stage,
        error=str(error),
        error_type=type(error).__name__,
        event_type="document_failure"
    )


def log_page_extraction_failure(
    logger: structlog.BoundLogger,
    path: str,
    page: int,
    error: Exception
) -> None:
    """Log a page whose text was replaced by the extraction sentinel."""
    logger.warning(
        "page_extraction_failed",
        path=path,
        page=page,
        error=str(error),
        event_type="page_extraction"
    )


def log_search(
    logger: structlog.BoundLogger,
    query: str,
    limit: int,
    results_count: int,
    execution_time_ms: float,
    filters_applied: Optional[Dict[str, Any]] = None
) -> None:
    """Log a similarity search for audit trail."""
    logger.info(
        "search_completed",
        query=query,
        limit=limit,
        results_count=results_count,
        execution_time_ms=execution_time_ms,
        filters_applied=filters_applied or {},
        event_type="search"
    )
