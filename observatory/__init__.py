"""Observatory — periodic service probes with durable history and live streaming."""

__version__ = "0.1.0"
