"""Input plugins for a log shipping pipeline: files, HTTP, journalctl, Kafka and Kubernetes logs."""

__version__ = "0.1.15"