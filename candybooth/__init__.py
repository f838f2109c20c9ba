"""Survey-driven candy photo booth: layer compositing service and hand-tracking camera booth."""

__version__ = "0.1.0"
