"""Iteration-control subsystem for agent loops.

The loop drives an external coding agent through many turns against a
persisted task list (``prd.json``).  Four pieces carry the weight:

- ``task_ids``: insertable, totally ordered task identifiers.
- ``locks``: advisory workspace locks that reject equal, parent and nested
  workspaces held by live processes.
- ``hooks`` / ``callbacks``: in-process handlers and file-based scripts run
  around each turn, with the 0 / 75 / other exit-code contract.
- ``classifier``: one verdict per turn from agent output plus task state.
"""
