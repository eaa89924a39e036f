"""
ETL pipeline components for data ingestion and processing.

Modules:
    registry: Source registry (read side) and source administration
    base: Abstract extractor with watermark filtering and content hashing
    schema: Canonical field aliases and value coercions
    enrichment: Derived fields and optional external lookups
    deduplication: Fingerprinting and latest-wins duplicate collapsing
    run_log: Durable ingestion run log with guarded state transitions
    coordinator: Runs the pipeline stages for a scope as a background task
    notifications: Report trigger fired on run completion
    scheduler: APScheduler integration for the nightly run

Subpackages:
    extractors: File (CSV, JSON, XML), REST API, database and FTP extractors
    validators: Per-source-type rule sets and the record validator
    transformers: Canonical normalization
    loaders: Raw and enriched record persistence with idempotent upserts

Architecture:
    A run moves through Started, Extracting, Validating, Transforming,
    Enriching and Deduplicating before it is Completed. Raw records are
    persisted while they stream in; the final records are upserted only
    once the whole batch has been deduplicated, so a failed run never
    leaves partial results behind.

Usage:
    from ingestion.coordinator import RunCoordinator

    coordinator = RunCoordinator(async_session_maker)
    run = await coordinator.start("all")
    run = await coordinator.join(run.run_id)
"""

__all__ = [
    "RunCoordinator",
    "SourceRegistry",
    "IngestionLog",
    "SourceExtractor",
    "Validator",
    "Normalizer",
    "Enricher",
    "Deduplicator",
    "RecordLoader",
]
