"""relaycore — real-time event delivery and off-thread data processing.

The client-side core of the reporting dashboard: a reconnecting hub
connection, a pub/sub dispatcher fanning pushed events out to any number
of consumers, and a process-pool engine for aggregate/filter/sort/
transform/analyze jobs.
"""

__version__ = "0.1.0"
