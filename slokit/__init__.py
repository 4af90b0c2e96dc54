"""Pipeline stages for turning log lines and Prometheus query results into SLO events."""

__version__ = "0.1.0"