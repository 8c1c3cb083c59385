"""Pure ingestion domain: record types, entity schemas, validators. ZERO I/O."""
