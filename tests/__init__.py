"""
DualStore Test Suite.

This package contains:
- unit/: Unit tests (in-memory stores, temporary SQLite files)
- integration/: Service wiring, HTTP API and operator CLI
"""
