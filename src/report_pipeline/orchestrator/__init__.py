"""Task state store, dispatcher, and queue workers for report generation.

The dispatcher never runs work itself. It persists a planned DAG, pushes
ready nodes onto per-kind queues, and advances task state from the progress
and result events that queue workers report back. All cross-call state lives
in the SQLite-backed store, so any number of dispatcher instances can serve
the same database and a restarted process resumes from persisted state alone.
"""
