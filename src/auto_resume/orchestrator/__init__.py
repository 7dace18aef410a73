"""Task queue and recovery engine for a long-lived CLI agent session.

Why not Celery / Dramatiq / Arq?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Queuing is the easy part. The hard part is the boundary between the queue
and one interactive agent session in tmux, which nobody else can drive
for us:

- Step completion is inferred by polling captured terminal output against
  per-phase patterns; there is no exit code.
- Usage-limit messages carry a wall-clock reset time that decides how long
  the whole queue sleeps.
- A workflow has to survive the process being killed mid-step and resume
  from its last checkpoint.

A broker would add an operational dependency for a single-machine tool
while all of the above would still live in custom task code. A JSON queue
file behind a directory lock, drained by one dispatcher at a time, keeps
the state inspectable with `cat` and recoverable from backups.
"""
