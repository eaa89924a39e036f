"""
Core utilities and configuration for the marketing ETL orchestrator.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Database engine, session factory and schema creation
    exceptions: Custom exception hierarchy for error handling
    events: In-process publish/subscribe bus for run lifecycle events
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import async_session_maker, init_models
    from core.exceptions import SourceConnectionError, ConcurrencyConflict
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Get database session
    async with async_session_maker() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "settings",
    "async_session_maker",
    "init_models",
    "setup_logging",
    "EventBus",
    # Exceptions
    "ETLException",
    "ExtractionError",
    "SourceConnectionError",
    "PartialExtractionError",
    "AuthenticationError",
    "DataFormatError",
    "ResourceNotFoundError",
    "TransformationError",
    "SchemaMismatchError",
    "EnrichmentLookupError",
    "LoadError",
    "PersistenceError",
    "DataQualityAbort",
    "ConcurrencyConflict",
    "RunCancelled",
    "InvalidStateTransition",
    "SourceNotFoundError",
    "RunNotFoundError",
    "RetryableError",
    "NonRetryableError",
]
