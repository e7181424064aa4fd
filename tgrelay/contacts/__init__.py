"""Contact records collected by verify and import jobs."""

from tgrelay.contacts.store import Contact, ContactStore

__all__ = ["Contact", "ContactStore"]
