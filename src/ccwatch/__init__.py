"""CCWatch - rolling-window usage and cost telemetry from ccusage."""

__version__ = "0.1.0"
