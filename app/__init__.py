"""Campaign dispatch backend.

Periodic engine that claims due email tasks, sends them, records outcomes and
reconciles campaign aggregates. Having this file ensures the 'app' directory
is recognized as a standard Python package during test discovery.
"""

__all__: list[str] = []
