"""WhatsApp conversation router for the tours and transfers menu."""

__version__ = "1.0.0"
