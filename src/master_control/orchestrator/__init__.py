"""Task orchestration core: queue, retries, subagent pool, state, scheduler.

Everything is scoped to one instance partition backed by a single SQLite
file. The scheduler pulls pending tasks, asks a decision oracle how to route
each one, gates the decision against available capabilities, and hands it to
a category handler on a thread pool. Durable status changes use
compare-and-set updates; the aggregate agent state is persisted before it is
published to readers.
"""
