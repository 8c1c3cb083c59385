"""
migration_ingestion -- extraction, mapping, validation and staging.

Connectors turn legacy sources into RawRecords, the field mapper builds
CanonicalRecords with confidence metadata, the validator classifies
issues, and the staging store holds each job's records between phases.

Architecture:
    Above migration_kernel and migration_config.  Nothing in the kernel
    imports from ingestion.
"""
