"""WSGI HTTP API for a webhook message broker: status, producers, channels, consumers, messages and dead-letter queues."""

__version__ = "0.1.0"