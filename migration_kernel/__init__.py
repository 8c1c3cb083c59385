"""
Migration Kernel

Shared primitives for the construction data migration system:
- Structured JSON logging with job/phase context
- Typed exception hierarchy (machine-readable codes)
- Injectable clock
- Validation issue DTOs
- SQLAlchemy declarative base and engine/session management
"""

__version__ = "0.1.0"
