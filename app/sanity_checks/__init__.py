"""
Startup sanity checks (fail-fast).

This package provides lightweight runtime checks that validate external
dependencies (target PostgreSQL, result cache) during FastAPI startup.
"""
