"""Offline-first task synchronization core.

Keeps a local copy of a personal task list in step with a backend
service and a note-taking plugin bridge, surfacing divergent edits as
conflict records instead of silently discarding them.
"""

__version__ = "0.4.0"
