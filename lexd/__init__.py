"""Configuration models, logging, retries, a persistent event queue, a worker pool and an HTTP trigger server."""

__version__ = "0.1.0"