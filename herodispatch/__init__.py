"""
Hero dispatch service.

Matches service requests ("jobs") to mobile field workers ("heroes") by
walking an expanding-radius wave schedule, and arbitrates concurrent
accept/decline calls so that at most one hero is ever bound to a job.
"""

__version__ = "1.0.0"
