"""Delegation of work items to pooled agent container sessions.

Every state change is a short ``BEGIN IMMEDIATE`` transaction on one SQLite
file, so several engines (threads or processes) can share a database:

- Writers compare-and-swap on the previous status or on ``version`` and
  raise instead of overwriting a concurrent change.
- At most one ``claimed`` delegation per work item is enforced by a partial
  unique index; a per-item ``KeyedLock`` only keeps threads of one process
  from racing into that index.
- Events are staged in ``engine_events`` inside the writing transaction and
  handed to the sink after commit.  A sink failure never undoes a committed
  change; unpublished rows are redelivered later.

Containers themselves are not started here.  Callers spawn the real process
and report heartbeats and context usage back to the session repository.
"""
