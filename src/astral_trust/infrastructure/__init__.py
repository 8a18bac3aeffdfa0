"""Infrastructure adapters for the trust core collaborator ports."""
from .memory import InMemoryPersonalDataStore, InMemoryResponderRegistry
from .notifications import HttpNotificationSink, InMemoryNotificationSink

__all__ = [
    "InMemoryPersonalDataStore",
    "InMemoryResponderRegistry",
    "HttpNotificationSink",
    "InMemoryNotificationSink",
]
