"""
fleetwatch: Fleet metrics collector and time-series store

Agents POST one metric report per host per tick; fleetwatch keeps a machine
registry and sample history, serves fleet and per-host views as JSON, and
prunes samples past the retention window.
"""

__version__ = '1.0.0'
