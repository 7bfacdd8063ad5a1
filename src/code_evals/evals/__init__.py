"""Benchmark run orchestration.

A run fans a set of (language, exercise) tasks out to editor-hosted agent
workers, one worker per task, over local socket channels. The coordinator
watches each worker's event stream, enforces the task timeout with a cancel
then force-close sequence, and grades the exercise afterwards with the
language's own test command. Everything runs on one asyncio loop; SQLite is
the only state that survives the process, which is what makes ``--run-id``
resumes possible.
"""
