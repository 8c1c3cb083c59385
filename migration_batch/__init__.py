"""
migration_batch -- Batch import of canonical records into a destination.

Transactional, idempotent batches applied on a bounded worker pool, with a
contiguous checkpoint for crash-safe resume.
"""
