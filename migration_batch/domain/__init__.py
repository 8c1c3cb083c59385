"""Pure batch-import domain types. ZERO I/O."""
