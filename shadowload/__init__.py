"""
🪞 shadowload
Replays a weighted read/write mix against an HTTP service and gates the
run on latency and error-rate thresholds.
"""

__version__ = "0.1.0"
