"""
Convoy - dependency-ordered CI pipeline orchestration.

Main components:
- Pipeline: definition loading, scheduling and stage execution
- Secrets: just-in-time credential resolution
- CLI: `convoy run` / `convoy validate`
"""

__version__ = "0.1.0"
