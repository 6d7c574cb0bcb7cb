"""Task hand-off between autonomous coding agents.

Tasks move through an explicit state machine (pending, approved, notified,
sent, then completed, failed or blocked, plus cancelled and reopen). Each
agent works on at most one task at a time: the busy signal is an
``in_progress`` execution record, guarded both by a per-agent lock and by a
partial unique index in SQLite. Executions run in a bounded thread pool and
always end in a recorded outcome; records left open by a crash are reported
at startup for an operator to resolve.
"""
