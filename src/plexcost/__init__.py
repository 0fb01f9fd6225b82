"""
plexcost: Savings estimator for a shared Plex server.

A background job that prices every title watched on the server, then works out
per user and month what buying or renting those titles would have cost and
which subscriptions would have covered them instead.
"""

__version__ = "0.1.0"
