"""
Dispatch layer.

- ``geo``: great-circle distance and band filtering
- ``schedule``: wave schedule and scoring weights (runtime config)
- ``scoring``: hero ranking
- ``candidates``: per-wave candidate lookup
- ``waves``: the expanding-radius wave engine
- ``arbiter``: atomic accept/decline
- ``lifecycle``: post-assignment status transitions and hero release

Only the arbiter binds a hero to a job; only the lifecycle watcher
releases one.
"""
